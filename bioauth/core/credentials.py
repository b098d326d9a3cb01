import time
import uuid
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from bioauth.settings import settings
from bioauth.store.models import IssuedCredential
from bioauth.observability.logging import log


def _encode(claims: Dict[str, Any], ttl_sec: int, token_type: str) -> tuple:
    now = int(time.time())
    exp = now + int(ttl_sec)
    to_encode = dict(claims)
    to_encode.update(
        {
            "iat": now,
            "exp": exp,
            "iss": settings.JWT_ISSUER,
            "aud": settings.JWT_AUDIENCE,
            "jti": uuid.uuid4().hex,
            "token_type": token_type,
        }
    )
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM), exp


def issue_credential(user_id: str, **claims) -> IssuedCredential:
    """
    Mint an access/refresh pair for a user whose authentication operation
    reached COMPLETED with an accepted proof. Callers: the state machine only.
    """
    access_claims = {"sub": user_id, **claims}
    access_token, expiry = _encode(access_claims, settings.JWT_ACCESS_TTL_SEC, "access")
    refresh_token, _ = _encode({"sub": user_id}, settings.JWT_REFRESH_TTL_SEC, "refresh")
    log(event="credential_issued", userId=user_id, expiry=expiry)
    return IssuedCredential(accessToken=access_token, refreshToken=refresh_token, expiry=expiry)


def decode_token(token: str, verify_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Returns the claims, or None for an invalid/expired token or a type mismatch."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError as e:
        log(event="token_decode_failed", error=str(e))
        return None
    if verify_type and payload.get("token_type") != verify_type:
        log(event="token_type_mismatch", expected=verify_type, actual=payload.get("token_type"))
        return None
    return payload
