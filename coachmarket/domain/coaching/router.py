"""Coaching router - coach profile and coach application endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user, require_system_role
from ...database import get_db
from ...models import SystemRole, User
from ...shared.responses import ok
from .schemas import (
    ApplicationReviewRequest,
    CoachApplicationCreate,
    CoachApplicationResponse,
    CoachProfileCreate,
    CoachProfileResponse,
    CoachProfileUpdate,
)
from .service import CoachingService

router = APIRouter(tags=["Coaching"])


def get_coaching_service(db: Session = Depends(get_db)) -> CoachingService:
    """Dependency injection for CoachingService"""
    return CoachingService(db)


def _profile(profile) -> dict:
    return CoachProfileResponse.model_validate(profile).model_dump(mode="json")


def _application(application) -> dict:
    return CoachApplicationResponse.model_validate(application).model_dump(mode="json")


# ============================================================================
# COACH PROFILE
# ============================================================================


@router.get("/coach/profile")
async def get_coach_profile(
    current_user: User = Depends(get_current_user),
    service: CoachingService = Depends(get_coaching_service),
):
    return ok(_profile(service.get_profile(current_user)))


@router.post("/coach/profile", status_code=201)
async def create_coach_profile(
    data: CoachProfileCreate,
    current_user: User = Depends(get_current_user),
    service: CoachingService = Depends(get_coaching_service),
):
    return ok(_profile(service.create_profile(data, current_user)))


@router.put("/coach/profile")
async def update_coach_profile(
    data: CoachProfileUpdate,
    current_user: User = Depends(get_current_user),
    service: CoachingService = Depends(get_coaching_service),
):
    return ok(_profile(service.update_profile(data, current_user)))


# ============================================================================
# COACH APPLICATIONS
# ============================================================================


@router.post("/coach-applications", status_code=201)
async def submit_application(
    data: CoachApplicationCreate,
    current_user: User = Depends(get_current_user),
    service: CoachingService = Depends(get_coaching_service),
):
    return ok(_application(service.submit_application(data, current_user)))


@router.get("/coach-applications/me")
async def my_applications(
    current_user: User = Depends(get_current_user),
    service: CoachingService = Depends(get_coaching_service),
):
    return ok([_application(a) for a in service.my_applications(current_user)])


@router.get("/admin/coach-applications")
async def list_applications(
    status: Optional[str] = Query(None),
    _: User = Depends(require_system_role(SystemRole.SYSTEM_OWNER, SystemRole.SYSTEM_MODERATOR)),
    service: CoachingService = Depends(get_coaching_service),
):
    """All applications, newest first"""
    return ok([_application(a) for a in service.list_applications(status)])


@router.patch("/admin/coach-applications/{application_ulid}")
async def review_application(
    application_ulid: str,
    data: ApplicationReviewRequest,
    reviewer: User = Depends(require_system_role(SystemRole.SYSTEM_OWNER)),
    service: CoachingService = Depends(get_coaching_service),
):
    """Approve or reject an application. Approval grants the COACH capability."""
    return ok(_application(service.review_application(application_ulid, data, reviewer)))
