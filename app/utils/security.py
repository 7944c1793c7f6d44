# app/utils/security.py
# JWT handling for the CRM read and dialer endpoints.
# Tokens are issued by the CRM auth layer; this service verifies them against the same secret.

from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import jwt
from ..config.settings import settings
from ..config.database import get_database
import uuid
import logging

logger = logging.getLogger(__name__)

class SecurityManager:
    def __init__(self):
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm
        self.access_token_expire_minutes = settings.access_token_expire_minutes

    def create_access_token(self, data: Dict[str, Any]) -> str:
        """Create JWT access token (same claims as the CRM auth layer)"""
        to_encode = data.copy()
        expire = datetime.utcnow() + timedelta(minutes=self.access_token_expire_minutes)

        to_encode.update({
            "exp": expire,
            "iat": datetime.utcnow(),
            "jti": str(uuid.uuid4()),
            "type": "access"
        })

        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode JWT token"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {e}")
            return None

    async def is_token_blacklisted(self, token_jti: str) -> bool:
        """Tokens revoked by a CRM logout land in token_blacklist"""
        db = get_database()
        return await db.token_blacklist.find_one({"token_jti": token_jti}) is not None

# Global security instance
security = SecurityManager()
