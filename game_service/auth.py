import jwt
from fastapi import Depends, Header, HTTPException, Request

from common.security import ROLE_ADMIN, ROLE_PLAYER, verify_token
from game_service.services import GameServices

def get_services(request: Request) -> GameServices:
    return request.app.state.services

def principal_from_token(token: str) -> dict:
    try:
        return verify_token(token)
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")

async def get_principal(authorization: str = Header(..., description="Bearer token")) -> dict:
    """Extract and validate JWT token from Authorization header"""
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format. Expected 'Bearer <token>'"
        )
    return principal_from_token(authorization.split(" ", 1)[1])

async def require_admin(principal: dict = Depends(get_principal)) -> dict:
    if principal.get("role") != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    return principal

def ensure_self_or_admin(principal: dict, account_id: str):
    """Players may only act on their own account; admins may read any."""
    if principal.get("role") == ROLE_ADMIN:
        return
    if principal.get("role") != ROLE_PLAYER or principal.get("sub") != account_id:
        raise HTTPException(
            status_code=403,
            detail=f"Forbidden: You can only access your own account ({principal.get('sub')})"
        )

async def require_player(principal: dict = Depends(get_principal)) -> dict:
    if principal.get("role") != ROLE_PLAYER:
        raise HTTPException(status_code=403, detail="Player role required")
    return principal
