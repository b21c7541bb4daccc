import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi import HTTPException


DEFAULT_TOKEN_TTL = timedelta(hours=12)


@dataclass
class AuthContext:
    user_id: str
    email: str


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _sign(secret: str, payload_part: str) -> str:
    sig = hmac.new(secret.encode("utf-8"), payload_part.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(sig)


def create_access_token(*, user_id: str, email: str, secret: str, ttl: timedelta = DEFAULT_TOKEN_TTL) -> str:
    """Issue a token in the account service's format (``payload.signature``)."""
    exp_at = datetime.now(timezone.utc) + ttl
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": int(exp_at.timestamp()),
        "jti": str(uuid4()),
    }
    payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_part = _b64url_encode(payload_raw)
    return f"{payload_part}.{_sign(secret, payload_part)}"


def decode_access_token(token: str, secret: str) -> dict:
    try:
        payload_part, sig_part = token.split(".", 1)
        if not hmac.compare_digest(_sign(secret, payload_part), sig_part):
            raise HTTPException(status_code=401, detail="Invalid token signature")
        payload = json.loads(_b64url_decode(payload_part))
        exp = int(payload.get("exp", 0))
        if exp < int(datetime.now(timezone.utc).timestamp()):
            raise HTTPException(status_code=401, detail="Token expired")
        if not payload.get("sub"):
            raise HTTPException(status_code=401, detail="Invalid token subject")
        return payload
    except HTTPException:
        raise
    except (ValueError, TypeError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid token")


def context_from_token(token: str, secret: str) -> AuthContext:
    payload = decode_access_token(token, secret)
    return AuthContext(user_id=str(payload["sub"]), email=str(payload.get("email", "")))


def verify_internal_key(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
