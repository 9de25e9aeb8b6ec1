from __future__ import annotations

from typing import Callable, List, Optional

from attendrix.core.errors import NotFoundError
from attendrix.core.timezone import ZoneLike, now_in_zone
from attendrix.features.mirror.store import MirrorStore
from attendrix.features.streaks import ledger
from attendrix.models.mirror import MirrorDocument


class StreakService:
    """Read side of the streak ledger, recomputed for today from the mirror document."""

    def __init__(self, store: MirrorStore, *, zone: ZoneLike = None, today: Optional[Callable[[], int]] = None):
        self._store = store
        self._zone = zone
        self._today = today or (lambda: ledger.to_day_index(now_in_zone(zone), zone))

    async def _document(self, user_id: str) -> MirrorDocument:
        raw = await self._store.get_document(user_id)
        if raw is None:
            raise NotFoundError(f"No mirror document for user {user_id}")
        return MirrorDocument.from_dict(user_id, raw)

    async def get_state(self, user_id: str) -> dict:
        document = await self._document(user_id)
        days = document.streak_history
        today = self._today()
        current = ledger.current_streak(days, today)
        last_active = days[-1] if days else None
        return {
            "user_id": user_id,
            "current_streak": current,
            # A stale stored value may lag the recomputed run; never report less.
            "longest_streak": max(document.longest_streak, ledger.longest_streak(days), current),
            "stored_current_streak": document.current_streak,
            "last_active_day": ledger.format_day_index(last_active, self._zone) if last_active is not None else None,
            "active_today": ledger.contains(days, today),
            "next_action_hint": self._next_action_hint(days, today, current),
        }

    async def history(self, user_id: str) -> List[dict]:
        document = await self._document(user_id)
        return [
            {"day_index": day, "day": ledger.day_index_to_date(day).isoformat()}
            for day in document.streak_history
        ]

    @staticmethod
    def _next_action_hint(days: List[int], today: int, current: int) -> str:
        if current == 0:
            return "Attend every class today to start a streak."
        if ledger.contains(days, today):
            return f"Day {current} locked in. Come back tomorrow."
        return "Finish today's classes to keep your streak alive."
