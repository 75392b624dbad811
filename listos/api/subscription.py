"""
Subscription and quota routes.

- GET  /api/subscription/status
- GET  /api/subscription/can-generate
- POST /api/subscription/record-usage
- POST /api/subscription/cancel
- POST /api/subscription/reactivate
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from listos.api.deps import current_user_id, failure_response, get_entitlement_service, ok
from listos.features.entitlements.service import EntitlementService

router = APIRouter(prefix="/subscription", tags=["subscription"])


class RecordUsageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: str = Field(alias="documentType")
    subject: Optional[str] = None
    grade: Optional[str] = None
    language: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = Field(default=None, alias="eventId", max_length=64)

    def usage_metadata(self) -> Dict[str, Any]:
        # Top-level fields win only when sent
        top_level = {"subject": self.subject, "grade": self.grade, "language": self.language}
        return {**self.metadata, **{k: v for k, v in top_level.items() if v is not None}}


@router.get("/status")
def subscription_status(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    status = service.get_subscription_status(user_id)
    return ok(status.model_dump(mode="json", by_alias=True))


@router.get("/can-generate")
def can_generate(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    decision = service.can_generate_document(user_id)
    return ok(decision.model_dump(mode="json", by_alias=True, exclude_none=True))


@router.post("/record-usage")
def record_usage(
    body: RecordUsageRequest,
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    result = service.record_document_usage(
        user_id,
        body.document_type,
        body.usage_metadata(),
        event_id=body.event_id,
    )
    if not result.success:
        return failure_response(result)
    return ok({"remainingUses": result.remaining_uses})


@router.post("/cancel")
def cancel(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    result = service.cancel_subscription(user_id)
    if not result.success:
        return failure_response(result)
    return ok({
        "message": "Subscription scheduled for cancellation at the end of the billing period",
        "cancelAt": result.cancel_at.isoformat() if result.cancel_at else None,
    })


@router.post("/reactivate")
def reactivate(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    result = service.reactivate_subscription(user_id)
    if not result.success:
        return failure_response(result)
    return ok({"message": "Subscription reactivated"})
