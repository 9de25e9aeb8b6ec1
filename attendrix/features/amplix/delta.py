"""
Net amplix delta for one attendance action.

Every point change written to the mirror goes through ``compute_delta`` so the
ledger stays auditable: gained minus lost, minus any challenge deduction.
"""
from __future__ import annotations

from typing import Optional, Union

from attendrix.models.attendance import CheckInResult, MarkAbsentResult
from attendrix.models.challenge import ChallengeEvaluation


def compute_delta(
    *,
    gained: Optional[int] = 0,
    lost: Optional[int] = 0,
    challenge_deduction: Optional[int] = 0,
) -> int:
    return ((gained or 0) - (lost or 0)) - (challenge_deduction or 0)


def delta_for_action(
    mutation: Union[CheckInResult, MarkAbsentResult],
    evaluation: Optional[ChallengeEvaluation] = None,
) -> int:
    """Delta for a settled mutation; a skipped or failed evaluation deducts nothing."""
    deduction = 0
    if evaluation is not None and not evaluation.failed:
        deduction = evaluation.points_to_deduct
    return compute_delta(
        gained=mutation.amplix_gained,
        lost=mutation.amplix_lost,
        challenge_deduction=deduction,
    )
