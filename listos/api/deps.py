"""Request-scoped dependencies and response helpers shared by the routers."""

from typing import Optional

from fastapi import Header, Request
from fastapi.responses import JSONResponse

from listos.core.errors import ACTIONS, KIND_STATUS, AuthenticationError, ValidationError
from listos.features.billing.reconciler import WebhookReconciler
from listos.features.entitlements.service import EntitlementService
from listos.models.user import UserIdentity


def _identity(user_id: Optional[str], email: Optional[str] = None, name: Optional[str] = None) -> UserIdentity:
    if not user_id or not user_id.strip():
        raise AuthenticationError("Missing authenticated user")
    try:
        return UserIdentity(user_id=user_id.strip(), email=email, display_name=name)
    except ValueError as exc:
        raise ValidationError(f"Invalid identity: {exc}")


def current_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> UserIdentity:
    """Identity asserted by the upstream identity provider."""
    return _identity(x_user_id, x_user_email, x_user_name)


def current_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    identity = _identity(x_user_id)
    request.state.user_id = identity.user_id
    return identity.user_id


def get_entitlement_service(request: Request) -> EntitlementService:
    return request.app.state.entitlements


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def ok(data) -> dict:
    return {"success": True, "data": data}


def failure_response(result) -> JSONResponse:
    """Render a failed operation result with the status of its error kind."""
    kind = result.error_kind
    return JSONResponse(
        status_code=KIND_STATUS[kind],
        content={
            "success": False,
            "error": {
                "code": kind.value,
                "message": result.error,
                "kind": kind.value,
                "retryable": kind.retryable,
                "user_message": result.error,
                "action": ACTIONS.get(kind),
            },
        },
    )
