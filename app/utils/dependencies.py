from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
from bson import ObjectId
from ..config.database import get_database
from ..models.user import is_admin
from ..services.cache_service import CacheStore
from ..services.call_log_service import CallLogService
from ..services.tata_admin_service import TataAdminService
from ..services.tata_call_service import TataCallService
from ..utils.security import security
import logging

logger = logging.getLogger(__name__)

# Security scheme
security_scheme = HTTPBearer()

class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme)
) -> Dict[str, Any]:
    """
    Dependency to get current authenticated user from JWT token
    """
    payload = security.verify_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError("Invalid token")

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type")

    token_jti = payload.get("jti")
    if token_jti and await security.is_token_blacklisted(token_jti):
        raise AuthenticationError("Token has been revoked")

    user_id = payload.get("sub")
    if user_id is None or not ObjectId.is_valid(user_id):
        raise AuthenticationError("Invalid token payload")

    db = get_database()
    user_data = await db.users.find_one({"_id": ObjectId(user_id)})
    if user_data is None:
        raise AuthenticationError("User not found")

    if not user_data.get("is_active", False):
        raise AuthenticationError("User account is disabled")

    # Convert ObjectId to string for JSON serialization
    user_data["_id"] = str(user_data["_id"])
    return user_data

async def get_admin_user(
    current_user: Dict[str, Any] = Depends(get_current_user)
) -> Dict[str, Any]:
    """
    Dependency to ensure current user is admin
    """
    if not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required."
        )
    return current_user

# Shared services are built in the application lifespan and kept on app.state

def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache

def get_call_log_service(request: Request) -> CallLogService:
    return request.app.state.call_log_service

def get_tata_call_service(request: Request) -> TataCallService:
    return request.app.state.tata_call_service

def get_tata_admin_service(request: Request) -> TataAdminService:
    return request.app.state.tata_admin_service
