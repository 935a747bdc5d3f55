"""Goal service - progress tracking with derived status"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from ...models import Goal, GoalStatus, User
from ...shared.responses import ApiError
from .repository import GoalRepository
from .schemas import GoalCreate, GoalUpdate

logger = logging.getLogger(__name__)


def derive_goal_status(current: int, target: int, deadline: datetime) -> str:
    if current >= target:
        return GoalStatus.COMPLETED
    if deadline < datetime.utcnow():
        return GoalStatus.OVERDUE
    return GoalStatus.IN_PROGRESS


class GoalService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = GoalRepository()

    def get_goals(self, user: User) -> list[Goal]:
        goals = self.repo.get_goals(self.db, user.ulid)
        # Deadlines pass without a write, so refresh the derived status on read
        changed = False
        for goal in goals:
            status = derive_goal_status(goal.current, goal.target, goal.deadline)
            if status != goal.status:
                goal.status = status
                changed = True
        if changed:
            self.db.commit()
        return goals

    def get_goal(self, goal_ulid: str, user: User) -> Goal:
        goal = self.repo.get_goal(self.db, goal_ulid, user.ulid)
        if not goal:
            raise ApiError(404, "GOAL_NOT_FOUND", "Goal not found")
        return goal

    def create_goal(self, data: GoalCreate, user: User) -> Goal:
        logger.info(f"📥 Creating goal for user {user.ulid}")
        return self.repo.create_goal(
            self.db,
            user.ulid,
            title=data.title,
            description=data.description,
            goal_type=data.goal_type,
            target=data.target,
            current=data.current,
            deadline=data.deadline,
            status=derive_goal_status(data.current, data.target, data.deadline),
        )

    def update_goal(self, goal_ulid: str, data: GoalUpdate, user: User) -> Goal:
        goal = self.get_goal(goal_ulid, user)
        updates = data.model_dump(exclude_unset=True)
        current = updates.get("current", goal.current)
        target = updates.get("target", goal.target)
        deadline = updates.get("deadline", goal.deadline)
        updates["status"] = derive_goal_status(current, target, deadline)
        return self.repo.update_goal(self.db, goal, **updates)

    def delete_goal(self, goal_ulid: str, user: User) -> dict:
        goal = self.get_goal(goal_ulid, user)
        self.repo.delete_goal(self.db, goal)
        return {"deleted": goal_ulid}
