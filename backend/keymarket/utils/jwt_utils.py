from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import jwt

from keymarket.errors import Unauthenticated

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller", "admin")


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: str, *, secret: str, role: str = "buyer", ttl_seconds: int = 60 * 60 * 24) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "role": role if role in ROLES else "buyer",
        "iat": now,
        "exp": now + int(ttl_seconds),
        "type": "access",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_token(token: str, *, secret: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.info("token_expired")
        return None
    except jwt.InvalidTokenError:
        return None


def parse_auth_header(auth_header: str) -> Tuple[Optional[str], Optional[str]]:
    if not auth_header:
        return None, None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1], "bearer"
    return None, None


def verify_caller(auth_header: str, *, secret: str) -> Caller:
    token, _scheme = parse_auth_header(auth_header or "")
    if not token:
        raise Unauthenticated("Missing bearer token")
    payload = decode_token(token, secret=secret)
    if not payload:
        raise Unauthenticated("Invalid or expired token")
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise Unauthenticated("Token has no subject")
    role = str(payload.get("role") or "buyer").strip().lower()
    if role not in ROLES:
        role = "buyer"
    return Caller(user_id=sub[:64], role=role)
