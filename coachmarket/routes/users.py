import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_system_role
from ..database import get_db
from ..models import Capability, SystemRole, User
from ..shared.responses import ApiError, ok

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


class RoleUpdateRequest(BaseModel):
    role: Optional[str] = None
    capability: Optional[str] = None
    action: Optional[str] = None
    user_ulid: Optional[str] = None


def _user_payload(user: User) -> dict:
    return {
        "ulid": user.ulid,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "system_role": user.system_role,
        "capabilities": list(user.capabilities or []),
        "is_coach": user.is_coach,
        "is_mentee": user.is_mentee,
    }


def _keeps_owner(data: RoleUpdateRequest) -> bool:
    return data.action == "add" and data.role == SystemRole.SYSTEM_OWNER


def apply_role_update(user: User, data: RoleUpdateRequest) -> None:
    """Apply a role / capability change to the user in memory"""
    if data.role:
        user.system_role = data.role if data.action == "add" else SystemRole.USER

    if data.capability:
        capabilities = list(user.capabilities or [])
        if data.action == "add" and data.capability not in capabilities:
            capabilities.append(data.capability)
        elif data.action == "remove":
            capabilities = [c for c in capabilities if c != data.capability]
        user.capabilities = capabilities
        user.is_coach = Capability.COACH in capabilities
        user.is_mentee = Capability.MENTEE in capabilities


@router.get("/users/me")
async def get_me(current_user: User = Depends(get_current_user)):
    return ok(_user_payload(current_user))


@router.get("/users/me/role")
async def get_my_role(current_user: User = Depends(get_current_user)):
    return ok({"system_role": current_user.system_role, "capabilities": list(current_user.capabilities or [])})


@router.post("/users/role")
async def update_role(
    data: RoleUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Add or remove a system role or capability"""
    if not data.role and not data.capability:
        raise ApiError(400, "VALIDATION_ERROR", "Either role or capability is required")
    if data.action not in ("add", "remove"):
        raise ApiError(400, "VALIDATION_ERROR", "Valid action (add/remove) is required")
    if data.role and data.role not in SystemRole.ALL:
        raise ApiError(400, "VALIDATION_ERROR", f"Invalid role: {data.role}")
    if data.capability and data.capability not in Capability.ALL:
        raise ApiError(400, "VALIDATION_ERROR", f"Invalid capability: {data.capability}")

    is_owner = current_user.system_role == SystemRole.SYSTEM_OWNER
    target_ulid = data.user_ulid or current_user.ulid
    needs_owner = (
        bool(data.role)
        or target_ulid != current_user.ulid
        or (data.capability == Capability.COACH and data.action == "add")
    )
    if needs_owner and not is_owner:
        raise ApiError(403, "FORBIDDEN", "Only system owners can make this change")

    target = current_user if target_ulid == current_user.ulid else db.query(User).filter(User.ulid == target_ulid).first()
    if not target:
        raise ApiError(404, "USER_NOT_FOUND", "User not found")

    if data.role and data.action == "remove" and target.system_role != data.role:
        raise ApiError(400, "ROLE_NOT_HELD", f"User does not have role {data.role}")
    if data.role and target.system_role == SystemRole.SYSTEM_OWNER and not _keeps_owner(data):
        owners = db.query(User).filter(User.system_role == SystemRole.SYSTEM_OWNER).count()
        if owners <= 1:
            raise ApiError(409, "LAST_OWNER", "Cannot remove the last system owner")

    apply_role_update(target, data)
    db.commit()
    db.refresh(target)

    logger.info(
        f"🔐 {current_user.email} {data.action} role={data.role} capability={data.capability} on {target.email}"
    )
    return ok(_user_payload(target))


@router.get("/admin/users")
async def list_users(
    _: User = Depends(require_system_role(SystemRole.SYSTEM_OWNER, SystemRole.SYSTEM_MODERATOR)),
    db: Session = Depends(get_db),
):
    users = db.query(User).order_by(User.created_at.desc()).all()
    return ok([_user_payload(u) for u in users])
