"""Bearer tokens for players and the admin console"""
import time
from typing import Dict, Optional

import jwt

from common.settings import settings

ALGO = "HS256"

ROLE_ADMIN = "admin"
ROLE_PLAYER = "player"
ROLES = (ROLE_ADMIN, ROLE_PLAYER)

REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub", "role"]

def _encode(claims: Dict) -> str:
    issued = int(time.time())
    claims.update(iss=settings.jwt_issuer, iat=issued, exp=issued + settings.jwt_ttl_seconds)
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGO)

def mint_user_jwt(sub: str, role: str = ROLE_PLAYER, claims: Optional[Dict] = None) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    return _encode({**(claims or {}), "sub": sub, "role": role})

def mint_admin_jwt(sub: str) -> str:
    return mint_user_jwt(sub, role=ROLE_ADMIN)

def verify_token(token: str) -> Dict:
    """Decode and check signature, issuer and expiry. Raises ``jwt.PyJWTError``."""
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        issuer=settings.jwt_issuer,
        options={"require": REQUIRED_CLAIMS},
    )
