"""Goal repository - Database operations for goals"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Goal


class GoalRepository:
    @staticmethod
    def get_goals(db: Session, user_ulid: str) -> list[Goal]:
        return db.query(Goal).filter(Goal.user_ulid == user_ulid).order_by(Goal.deadline.asc()).all()

    @staticmethod
    def get_goal(db: Session, goal_ulid: str, user_ulid: str) -> Optional[Goal]:
        return db.query(Goal).filter(Goal.ulid == goal_ulid, Goal.user_ulid == user_ulid).first()

    @staticmethod
    def create_goal(db: Session, user_ulid: str, **goal_data) -> Goal:
        goal = Goal(user_ulid=user_ulid, **goal_data)
        db.add(goal)
        db.commit()
        db.refresh(goal)
        return goal

    @staticmethod
    def update_goal(db: Session, goal: Goal, **updates) -> Goal:
        """Apply the given fields; an explicit None clears a nullable column"""
        for key, value in updates.items():
            if hasattr(goal, key):
                setattr(goal, key, value)
        db.commit()
        db.refresh(goal)
        return goal

    @staticmethod
    def delete_goal(db: Session, goal: Goal) -> None:
        db.delete(goal)
        db.commit()
