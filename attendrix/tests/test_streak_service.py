import pytest

from attendrix.core.errors import NotFoundError
from attendrix.features.streaks.service import StreakService
from attendrix.tests.mocks import MONDAY, TUESDAY, WEDNESDAY, mirror_document


@pytest.mark.asyncio
async def test_state_recomputes_current_for_today(memory_store, today):
    # Stored value is stale: the run broke before today
    await memory_store.upsert_document(
        "u1", mirror_document(streakHistory=[MONDAY - 3, MONDAY - 2], currentStreak=2, longestStreak=2)
    )
    service = StreakService(memory_store, zone="Asia/Kolkata", today=today)

    state = await service.get_state("u1")

    assert state["current_streak"] == 0
    assert state["stored_current_streak"] == 2
    assert state["longest_streak"] == 2
    assert state["active_today"] is False
    assert state["next_action_hint"] == "Attend every class today to start a streak."


@pytest.mark.asyncio
async def test_state_active_today(memory_store, today):
    await memory_store.upsert_document(
        "u1", mirror_document(streakHistory=[MONDAY, TUESDAY, WEDNESDAY], currentStreak=3, longestStreak=1)
    )
    service = StreakService(memory_store, zone="Asia/Kolkata", today=today)

    state = await service.get_state("u1")

    assert state["current_streak"] == 3
    # Never report a longest below the recomputed run
    assert state["longest_streak"] == 3
    assert state["active_today"] is True
    assert state["last_active_day"] == "2024-03-13 IST"
    assert state["next_action_hint"] == "Day 3 locked in. Come back tomorrow."


@pytest.mark.asyncio
async def test_state_pending_today(memory_store, today):
    await memory_store.upsert_document("u1", mirror_document(streakHistory=[TUESDAY], currentStreak=1, longestStreak=1))
    service = StreakService(memory_store, zone="Asia/Kolkata", today=today)

    state = await service.get_state("u1")

    assert state["current_streak"] == 1
    assert state["next_action_hint"] == "Finish today's classes to keep your streak alive."


@pytest.mark.asyncio
async def test_history_lists_days(memory_store, today):
    await memory_store.upsert_document("u1", mirror_document(streakHistory=["19794", 19793]))
    service = StreakService(memory_store, zone="Asia/Kolkata", today=today)

    assert await service.history("u1") == [
        {"day_index": MONDAY, "day": "2024-03-11"},
        {"day_index": TUESDAY, "day": "2024-03-12"},
    ]


@pytest.mark.asyncio
async def test_unknown_user(memory_store, today):
    service = StreakService(memory_store, today=today)
    with pytest.raises(NotFoundError):
        await service.get_state("ghost")
