from __future__ import annotations

import logging
from collections.abc import Sequence

from jury_trial._defaults import DEFAULT_MODEL, MAX_ROUNDS, MODERATOR_SPEAKER, SYSTEM_SPEAKER
from jury_trial.llm.client import LiteLLMClient, LLMClient
from jury_trial.personas.base import AgentResult, Persona
from jury_trial.trial.models import FollowUpQuestion, TrialInteraction
from jury_trial.utils import extract_json_array

logger = logging.getLogger(__name__)


def resolve_persona_id(name_or_id: str, personas: Sequence[Persona]) -> str:
    """Map a model-supplied persona reference to a persona id.

    Priority: exact id match, then case-insensitive name match, then the
    reference itself unchanged.
    """
    for persona in personas:
        if persona.id == name_or_id:
            return persona.id
    wanted = name_or_id.strip().casefold()
    for persona in personas:
        if persona.name.casefold() == wanted:
            return persona.id
    return name_or_id


def speaker_label(speaker: str, personas: Sequence[Persona]) -> str:
    if speaker == MODERATOR_SPEAKER:
        return "Moderator"
    if speaker == SYSTEM_SPEAKER:
        return "System"
    for persona in personas:
        if persona.id == speaker:
            return persona.name
    return speaker


class Moderator:
    FOLLOW_UP_SYSTEM_PROMPT = (
        "You are an intelligent moderator facilitating a jury deliberation. Your role is to analyze "
        "responses from different personas and generate targeted follow-up questions to clarify, "
        "resolve conflicts, or gather missing information.\n\n"
        "Guidelines:\n"
        "1. Analyze responses for conflicts, gaps, or areas needing clarification\n"
        "2. Generate specific, targeted questions rather than general ones\n"
        "3. Focus on areas where personas disagree or provide incomplete information\n"
        "4. Avoid redundant questions already answered\n"
        "5. Ask for specific examples or clarification when responses are vague\n"
        "6. IMPORTANT: Use the exact persona NAMES provided, not IDs\n\n"
        "Available personas: {persona_names}\n\n"
        "Respond ONLY with a JSON array of follow-up questions:\n"
        "[\n"
        "  {{\n"
        '    "question": "<specific question text>",\n'
        '    "targetPersonaName": "<exact persona name from the list above>",\n'
        '    "reasoning": "<why this question is needed>"\n'
        "  }}\n"
        "]\n\n"
        "If no follow-up questions are needed, return an empty array: []"
    )

    CONTINUE_SYSTEM_PROMPT = (
        "You are an intelligent moderator determining whether a jury deliberation should continue "
        "or if sufficient information has been gathered for a final verdict.\n\n"
        "Guidelines:\n"
        "1. Consider if there are unresolved conflicts between personas\n"
        "2. Check if important questions remain unanswered\n"
        "3. Evaluate if responses are sufficiently detailed and specific\n"
        "4. Determine if additional rounds would provide valuable insights\n"
        "5. Remember that deliberation is limited to {max_rounds} rounds maximum\n\n"
        'Respond with either "CONTINUE" or "STOP" followed by a brief reasoning.'
    )

    VERDICT_SYSTEM_PROMPT = (
        "You are an intelligent moderator synthesizing a final verdict from a jury deliberation. "
        "Create a comprehensive answer that addresses the original question by incorporating "
        "insights from all personas.\n\n"
        "Guidelines:\n"
        "1. Address the original question directly and comprehensively\n"
        "2. Reference key points from different personas BY NAME\n"
        "3. Present different viewpoints with reasoning when personas disagree\n"
        "4. Provide a clear, well-reasoned conclusion\n"
        "5. Structure the verdict logically with clear reasoning"
    )

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.0,
        llm_client: LLMClient | None = None,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.llm_client = llm_client or LiteLLMClient()
        self.max_rounds = max_rounds

    async def should_continue(
        self,
        interactions: Sequence[TrialInteraction],
        round_count: int,
        personas: Sequence[Persona] = (),
    ) -> bool:
        if round_count >= self.max_rounds:
            return False

        prompt = "\n".join(
            [
                f"Current Round: {round_count}/{self.max_rounds}",
                "",
                "Trial Interactions:",
                *(
                    f"- {speaker_label(i.speaker, personas)} (Round {i.round_number}): {i.content}"
                    for i in interactions
                ),
                "",
                "Should deliberation continue?",
            ]
        )
        try:
            reply = await self._ask(self.CONTINUE_SYSTEM_PROMPT.format(max_rounds=self.max_rounds), prompt)
        except Exception as exc:
            logger.warning("Moderator continue decision failed; stopping deliberation: %s", exc)
            return False
        return reply.strip().upper().startswith("CONTINUE")

    async def generate_follow_ups(
        self,
        original_question: str,
        current_responses: Sequence[AgentResult],
        personas: Sequence[Persona],
    ) -> list[FollowUpQuestion]:
        lines = [f"Original Question: {original_question}", "", "Persona Responses:"]
        for result in current_responses:
            if result.error is None and result.response.strip():
                lines.append(f"- {speaker_label(result.persona_id, personas)}: {result.response}")
        lines.append(
            "\nAnalyze these responses and generate follow-up questions if needed. "
            "Use the exact persona names in your response."
        )
        system_prompt = self.FOLLOW_UP_SYSTEM_PROMPT.format(
            persona_names=", ".join(persona.name for persona in personas)
        )
        try:
            reply = await self._ask(system_prompt, "\n".join(lines))
        except Exception as exc:
            logger.warning("Moderator follow-up generation failed: %s", exc)
            return []
        return self.parse_follow_ups(reply, personas)

    async def synthesize_verdict(
        self,
        original_question: str,
        all_interactions: Sequence[TrialInteraction],
        personas: Sequence[Persona],
    ) -> str:
        lines = [f"Original Question: {original_question}", "", "Complete Trial Transcript:"]
        for interaction in all_interactions:
            lines.append(
                f"{speaker_label(interaction.speaker, personas)} "
                f"(Round {interaction.round_number}, {interaction.type.name}): {interaction.content}"
            )
        lines.append(
            "\nSynthesize all perspectives into a comprehensive final verdict that addresses the "
            "original question. Reference personas by their names."
        )
        try:
            return await self._ask(self.VERDICT_SYSTEM_PROMPT, "\n".join(lines))
        except Exception as exc:
            logger.warning("Moderator verdict synthesis failed: %s", exc)
            return f"Unable to generate verdict due to an error: {exc}"

    @staticmethod
    def parse_follow_ups(reply: str, personas: Sequence[Persona]) -> list[FollowUpQuestion]:
        items = extract_json_array(reply)
        if items is None:
            if reply.strip():
                logger.warning("Moderator follow-up reply was not a JSON array; ending deliberation.")
            return []

        questions: list[FollowUpQuestion] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            question = item.get("question")
            target = item.get("targetPersonaName") or item.get("targetPersonaId")
            reasoning = item.get("reasoning")
            if not question or not target or reasoning is None:
                continue
            questions.append(
                FollowUpQuestion(
                    question=str(question),
                    target_persona_id=resolve_persona_id(str(target), personas),
                    reasoning=str(reasoning),
                )
            )
        return questions

    async def _ask(self, system_prompt: str, prompt: str) -> str:
        payload = await self.llm_client.complete(
            model=self.model,
            system_prompt=system_prompt,
            prompt=prompt,
            temperature=self.temperature,
        )
        return str(payload.get("content") or "")
