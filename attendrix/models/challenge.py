from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class ChallengeEvaluation:
    """Normalized result of the challenge-evaluation procedure."""

    status: str
    message: str = ""
    points_to_deduct: int = 0
    claimable_challenges_count: int = 0
    processed_challenges: Optional[int] = None
    total_challenges: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.status == "error"
