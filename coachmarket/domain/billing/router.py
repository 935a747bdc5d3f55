"""Billing router - plans, Stripe webhook, dispute evidence and refund endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user, require_system_role
from ...database import get_db
from ...models import SystemRole, User
from ...shared.responses import ok
from .schemas import DisputeEvidence, DisputeResponse, PlanResponse, RefundRequest
from .service import BillingService

router = APIRouter(tags=["Billing"])


def get_billing_service(db: Session = Depends(get_db)) -> BillingService:
    """Dependency injection for BillingService"""
    return BillingService(db)


@router.get("/billing/plans")
async def list_plans(service: BillingService = Depends(get_billing_service)):
    return ok([PlanResponse.model_validate(p).model_dump(mode="json") for p in service.list_plans()])


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    payload = await request.body()
    event = service.construct_event(payload, request.headers.get("stripe-signature"))
    return ok(service.handle_event(event))


@router.get("/disputes")
async def list_disputes(
    session_ulid: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    disputes = service.list_disputes(current_user, session_ulid)
    return ok([DisputeResponse.model_validate(d).model_dump(mode="json") for d in disputes])


@router.post("/disputes/{dispute_ulid}/evidence")
async def submit_evidence(
    dispute_ulid: str,
    evidence: DisputeEvidence,
    current_user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    dispute = service.submit_evidence(dispute_ulid, evidence, current_user)
    return ok(DisputeResponse.model_validate(dispute).model_dump(mode="json"))


@router.post("/disputes/{dispute_ulid}/refund")
async def refund_dispute(
    dispute_ulid: str,
    data: Optional[RefundRequest] = None,
    current_user: User = Depends(require_system_role(SystemRole.SYSTEM_OWNER)),
    service: BillingService = Depends(get_billing_service),
):
    """Refund a disputed payment, in full unless an amount is given"""
    dispute = service.refund_dispute(dispute_ulid, data or RefundRequest(), current_user)
    return ok(DisputeResponse.model_validate(dispute).model_dump(mode="json"))
