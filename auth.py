from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt


class AuthError(RuntimeError):
    pass


class AuthConfigError(AuthError):
    pass


@dataclass(frozen=True)
class AuthIdentity:
    """
    Authenticated caller as asserted by the identity subsystem.

    `user_id` is the stable account id (the owner key on orders). `email` is the
    payer contact sent to the payment gateway and may be absent for some social
    logins.
    """

    user_id: str
    role: str = "user"
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _normalize_role(role: str) -> str:
    normalized = str(role or "user").strip().lower()
    if normalized not in {"user", "admin"}:
        return "user"
    return normalized


def decode_access_token(token: str, secret: str) -> AuthIdentity:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    try:
        payload: Dict[str, Any] = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("invalid token") from exc

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise AuthError("invalid token subject")
    return AuthIdentity(
        user_id=user_id,
        role=_normalize_role(str(payload.get("role") or "user")),
        email=str(payload.get("email") or "").strip() or None,
        name=str(payload.get("name") or "").strip() or None,
    )


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        raise AuthError("missing Authorization header")
    prefix = "Bearer "
    if not raw.startswith(prefix):
        raise AuthError("invalid Authorization header")
    token = raw[len(prefix):].strip()
    if not token:
        raise AuthError("empty bearer token")
    return token
