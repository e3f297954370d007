import os
from typing import Any, Dict

from jose import jwt


def _secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token; raises jose.JWTError when invalid."""
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    return jwt.decode(token, _secret(), algorithms=[algorithm])
