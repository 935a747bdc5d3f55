"""Goal router - FastAPI endpoints for personal goals"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ...shared.responses import ok
from .schemas import GoalCreate, GoalResponse, GoalUpdate
from .service import GoalService

router = APIRouter(prefix="/goals", tags=["Goals"])


def get_goal_service(db: Session = Depends(get_db)) -> GoalService:
    """Dependency injection for GoalService"""
    return GoalService(db)


def _dump(goal) -> dict:
    return GoalResponse.model_validate(goal).model_dump(mode="json")


@router.get("")
async def get_goals(
    current_user: User = Depends(get_current_user),
    service: GoalService = Depends(get_goal_service),
):
    return ok([_dump(g) for g in service.get_goals(current_user)])


@router.post("", status_code=201)
async def create_goal(
    data: GoalCreate,
    current_user: User = Depends(get_current_user),
    service: GoalService = Depends(get_goal_service),
):
    return ok(_dump(service.create_goal(data, current_user)))


@router.patch("/{goal_ulid}")
async def update_goal(
    goal_ulid: str,
    data: GoalUpdate,
    current_user: User = Depends(get_current_user),
    service: GoalService = Depends(get_goal_service),
):
    return ok(_dump(service.update_goal(goal_ulid, data, current_user)))


@router.delete("/{goal_ulid}")
async def delete_goal(
    goal_ulid: str,
    current_user: User = Depends(get_current_user),
    service: GoalService = Depends(get_goal_service),
):
    return ok(service.delete_goal(goal_ulid, current_user))
