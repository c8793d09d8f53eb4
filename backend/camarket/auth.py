import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from camarket.models import ActorRef
from camarket.settings import AUTH_REQUIRED, AUTH_SECRET, TOKEN_TTL_HOURS


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(actor: ActorRef) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{actor.kind}|{actor.id}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[ActorRef]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        if not hmac.compare_digest(_b64urldecode(sig_part), _sign(payload)):
            return None
        kind, rest = payload.decode("utf-8").split("|", 1)
        actor_id, expiry_ts = rest.rsplit("|", 1)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return ActorRef(kind=kind, id=actor_id)
    except ValueError:
        # Covers bad base64, bad utf-8, missing separators and unknown actor kinds.
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_actor(authorization: Optional[str]) -> Optional[ActorRef]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_authenticated_actor(authorization: Optional[str] = Header(default=None)) -> ActorRef:
    actor = resolve_request_actor(authorization)
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return actor


def assert_actor_authorized(
    actor: ActorRef,
    authorization: Optional[str] = Header(default=None),
) -> None:
    token_actor = resolve_request_actor(authorization)
    if not token_actor:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_actor.kind == "system":
        return
    if token_actor != actor:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token actor does not match request actor")
