"""Coaching service - coach profiles and the coach application review flow"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ApplicationStatus, Capability, CoachApplication, CoachProfile, User
from ...shared.responses import ApiError
from .repository import CoachingRepository
from .schemas import (
    ApplicationReviewRequest,
    CoachApplicationCreate,
    CoachProfileCreate,
    CoachProfileUpdate,
)

logger = logging.getLogger(__name__)


def _check_duration_bounds(minimum: int, maximum: int, default: int) -> None:
    if minimum > maximum:
        raise ApiError(400, "VALIDATION_ERROR", "Minimum duration cannot exceed maximum duration")
    if not minimum <= default <= maximum:
        raise ApiError(400, "VALIDATION_ERROR", "Default duration must be between the minimum and maximum")


class CoachingService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = CoachingRepository()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    @staticmethod
    def _require_coach(user: User) -> None:
        if Capability.COACH not in (user.capabilities or []):
            raise ApiError(403, "FORBIDDEN", "Only coaches can manage a coach profile")

    def get_profile(self, user: User) -> CoachProfile:
        profile = self.repo.get_profile(self.db, user.ulid)
        if not profile:
            raise ApiError(404, "NOT_FOUND", "Coach profile not found")
        return profile

    def create_profile(self, data: CoachProfileCreate, user: User) -> CoachProfile:
        self._require_coach(user)
        if self.repo.get_profile(self.db, user.ulid):
            raise ApiError(409, "PROFILE_EXISTS", "Coach profile already exists")
        _check_duration_bounds(data.minimum_duration, data.maximum_duration, data.default_duration)

        logger.info(f"📥 Creating coach profile for {user.ulid}")
        return self.repo.create_profile(self.db, user.ulid, **data.model_dump())

    def update_profile(self, data: CoachProfileUpdate, user: User) -> CoachProfile:
        self._require_coach(user)
        profile = self.get_profile(user)
        updates = data.model_dump(exclude_unset=True)
        _check_duration_bounds(
            updates.get("minimum_duration", profile.minimum_duration),
            updates.get("maximum_duration", profile.maximum_duration),
            updates.get("default_duration", profile.default_duration),
        )
        return self.repo.update_profile(self.db, profile, **updates)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def submit_application(self, data: CoachApplicationCreate, user: User) -> CoachApplication:
        if Capability.COACH in (user.capabilities or []):
            raise ApiError(400, "ALREADY_COACH", "You are already a coach")
        if self.repo.get_pending_application(self.db, user.ulid):
            raise ApiError(409, "APPLICATION_PENDING", "You already have a pending application")

        logger.info(f"📝 Coach application submitted by {user.email}")
        return self.repo.create_application(
            self.db,
            user.ulid,
            experience=data.experience,
            specialties=data.specialties,
            status=ApplicationStatus.PENDING,
        )

    def my_applications(self, user: User) -> list[CoachApplication]:
        return self.repo.list_applications(self.db, applicant_ulid=user.ulid)

    def list_applications(self, status: Optional[str] = None) -> list[CoachApplication]:
        if status and status not in ApplicationStatus.ALL:
            raise ApiError(400, "VALIDATION_ERROR", f"Unknown application status: {status}")
        return self.repo.list_applications(self.db, status=status)

    def review_application(
        self, application_ulid: str, data: ApplicationReviewRequest, reviewer: User
    ) -> CoachApplication:
        application = self.repo.get_application(self.db, application_ulid)
        if not application:
            raise ApiError(404, "APPLICATION_NOT_FOUND", "Application not found")

        application.status = data.status
        application.notes = data.notes
        application.reviewed_by_ulid = reviewer.ulid
        application.review_date = datetime.utcnow()

        if data.status == ApplicationStatus.APPROVED:
            applicant = application.applicant
            capabilities = list(applicant.capabilities or [])
            if Capability.COACH not in capabilities:
                capabilities.append(Capability.COACH)
            applicant.capabilities = capabilities
            applicant.is_coach = True
            logger.info(f"🎓 {applicant.email} approved as coach by {reviewer.email}")

        self.db.commit()
        self.db.refresh(application)
        return application
