"""
Session sync route.

- POST /api/auth/session: record the verified identity as a User row
"""
from fastapi import APIRouter, Depends, Request

from listos.api.deps import current_identity, ok
from listos.features.users.service import ensure_user
from listos.models.user import UserIdentity

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/session")
def sync_session(request: Request, identity: UserIdentity = Depends(current_identity)):
    user = ensure_user(request.app.state.gateway, identity, retry=request.app.state.retry)
    return ok(user.model_dump(mode="json"))
