from .models import (
    FollowUpQuestion,
    InteractionType,
    Trial,
    TrialInteraction,
    TrialState,
    TrialStatus,
)

__all__ = [
    "FollowUpQuestion",
    "InteractionType",
    "Trial",
    "TrialInteraction",
    "TrialState",
    "TrialStatus",
]
