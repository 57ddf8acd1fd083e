from .agent import Moderator, resolve_persona_id, speaker_label

__all__ = ["Moderator", "resolve_persona_id", "speaker_label"]
