import hmac

from fastapi import APIRouter, Depends, HTTPException

from camarket.auth import create_access_token, require_authenticated_actor
from camarket.models import ActorRef, AuthTokenRequest, AuthTokenResponse
from camarket.settings import AUTH_LOGIN_PASSWORD

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=AuthTokenResponse)
def issue_token(payload: AuthTokenRequest):
    if payload.actor.kind == "system":
        # System tokens are minted out of band for gateway callbacks and admin tooling.
        raise HTTPException(status_code=403, detail="System tokens cannot be issued here")
    if not hmac.compare_digest(payload.password.encode("utf-8"), AUTH_LOGIN_PASSWORD.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(payload.actor)
    return AuthTokenResponse(access_token=token, actor=payload.actor, expires_at=expires_at)


@router.get("/me", response_model=ActorRef)
def me(actor: ActorRef = Depends(require_authenticated_actor)):
    return actor
