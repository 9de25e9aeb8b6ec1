from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from attendrix.features.streaks.service import StreakService

router = APIRouter()


def get_streak_service(request: Request) -> StreakService:
    return request.app.state.streak_service


@router.get("/v1/streaks/current")
async def get_current_streak(
    user_id: str = Query(..., min_length=1),
    service: StreakService = Depends(get_streak_service),
):
    """Return the current streak state for a user."""
    return await service.get_state(user_id)


@router.get("/v1/streaks/history")
async def get_streak_history(
    user_id: str = Query(..., min_length=1),
    service: StreakService = Depends(get_streak_service),
):
    return {"history": await service.history(user_id)}
