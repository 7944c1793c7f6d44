# app/services/tata_api_client.py
# Tata Tele (Smartflo) REST client: token management, retry policy and the API calls we use

import asyncio
import base64
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config.database import get_database
from ..config.settings import get_settings

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 8000
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
SYSTEM_TOKEN_ID = "system"

class TataAPIError(Exception):
    """Non-retriable or exhausted Smartflo API failure"""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

def build_cipher(encryption_key: Optional[str]) -> Optional[Fernet]:
    """Fernet cipher derived from the configured key; None stores tokens in clear"""
    if not encryption_key:
        return None
    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"leadg_tata_salt",
            iterations=100000,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(encryption_key.encode())))
    except Exception as e:
        logger.warning(f"Failed to initialize token encryption: {e}")
        return None

class TataApiClient:
    """
    Smartflo API client.

    Every request carries the bearer token. Transport errors, timeouts, 5xx and
    429 responses are retried with capped exponential backoff; other 4xx errors
    raise immediately. A 401 drops the token and retries once after a fresh login.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_ms: Optional[int] = None,
        encryption_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.tata_api_base_url).rstrip("/")
        self.email = email if email is not None else self.settings.tata_email
        self.password = password if password is not None else self.settings.tata_password
        self.timeout = timeout or self.settings.tata_api_timeout or 15
        self.max_retries = self.settings.tata_api_retries if max_retries is None else max_retries
        self.retry_base_ms = self.settings.tata_retry_base_ms if retry_base_ms is None else retry_base_ms
        self.cipher_suite = build_cipher(encryption_key or self.settings.tata_encryption_key)

        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._login_lock = asyncio.Lock()
        self._sleep = asyncio.sleep

    def _get_db(self):
        try:
            return get_database()
        except RuntimeError:
            return None

    # =============================================================================
    # TOKEN MANAGEMENT
    # =============================================================================

    def _encrypt_token(self, token: str) -> str:
        if not self.cipher_suite:
            return token
        return self.cipher_suite.encrypt(token.encode()).decode()

    def _decrypt_token(self, stored: str) -> Optional[str]:
        if not self.cipher_suite:
            return stored
        try:
            return self.cipher_suite.decrypt(stored.encode()).decode()
        except InvalidToken:
            logger.warning("Stored Tata token could not be decrypted, logging in again")
            return None

    def _token_is_fresh(self) -> bool:
        return bool(
            self._token
            and self._token_expires_at
            and self._token_expires_at > datetime.utcnow() + TOKEN_REFRESH_MARGIN
        )

    async def _load_stored_token(self) -> bool:
        db = self._get_db()
        if db is None:
            return False
        token_doc = await db.tata_tokens.find_one({"user_id": SYSTEM_TOKEN_ID})
        if not token_doc:
            return False
        expires_at = token_doc.get("expires_at")
        if not expires_at or expires_at <= datetime.utcnow() + TOKEN_REFRESH_MARGIN:
            return False
        token = self._decrypt_token(token_doc.get("access_token", ""))
        if not token:
            return False
        self._token, self._token_expires_at = token, expires_at
        return True

    async def _store_token(self, token: str, expires_at: datetime) -> None:
        self._token, self._token_expires_at = token, expires_at
        db = self._get_db()
        if db is None:
            logger.warning("Database not available, Tata token kept in memory only")
            return
        await db.tata_tokens.update_one(
            {"user_id": SYSTEM_TOKEN_ID},
            {"$set": {
                "user_id": SYSTEM_TOKEN_ID,
                "access_token": self._encrypt_token(token),
                "expires_at": expires_at,
                "created_at": datetime.utcnow(),
            }},
            upsert=True,
        )

    async def login(self) -> Dict[str, Any]:
        """Exchange credentials for a bearer token and persist it"""
        if not self.email or not self.password:
            raise TataAPIError("Tata credentials are not configured")

        logger.info(f"Attempting Tata login for {self.email}")
        data = await self._request(
            "POST", "/v1/auth/login",
            json={"email": self.email, "password": self.password},
            authenticated=False,
        )
        access_token = data.get("access_token")
        if not access_token:
            raise TataAPIError("No access token in Tata login response", payload=data)

        expires_in = int(data.get("expires_in") or 3600)
        expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
        await self._store_token(access_token, expires_at)
        logger.info("✅ Tata login successful")
        return {
            "success": True,
            "token_type": data.get("token_type", "bearer"),
            "expires_in": expires_in,
            "expires_at": expires_at,
        }

    async def get_token(self, force_refresh: bool = False) -> str:
        """Valid bearer token; concurrent callers share a single login"""
        if not force_refresh and self._token_is_fresh():
            return self._token

        async with self._login_lock:
            if not force_refresh and self._token_is_fresh():
                return self._token
            if not force_refresh and await self._load_stored_token():
                return self._token
            await self.login()
            return self._token

    async def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = None
        db = self._get_db()
        if db is not None:
            await db.tata_tokens.delete_one({"user_id": SYSTEM_TOKEN_ID})

    # =============================================================================
    # REQUEST PIPELINE
    # =============================================================================

    def _backoff_seconds(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after and retry_after.isdigit():
            return min(int(retry_after), MAX_BACKOFF_MS / 1000)
        delay_ms = min(self.retry_base_ms * (2 ** attempt), MAX_BACKOFF_MS)
        return (delay_ms + random.uniform(0, self.retry_base_ms)) / 1000

    async def _send(self, method: str, path: str, headers: Dict[str, str], **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            return await client.request(method, path, headers=headers, **kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        attempt = 0
        reauthenticated = False

        while True:
            headers = {"Content-Type": "application/json", "Accept": "application/json"}
            if authenticated:
                headers["Authorization"] = f"Bearer {await self.get_token()}"

            try:
                response = await self._send(method, path, headers, json=json, params=params)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise TataAPIError(f"Tata API unreachable ({method} {path}): {e}") from e
                delay = self._backoff_seconds(attempt)
                logger.warning(f"Tata {method} {path} failed ({e!r}), retry {attempt + 1} in {delay:.2f}s")
                attempt += 1
                await self._sleep(delay)
                continue

            status = response.status_code
            if status == 401 and authenticated and not reauthenticated:
                logger.info("Tata token rejected, logging in again")
                reauthenticated = True
                await self.invalidate_token()
                continue

            if status == 429 or status >= 500:
                if attempt >= self.max_retries:
                    raise TataAPIError(
                        f"Tata API {method} {path} failed with {status} after {attempt + 1} attempts",
                        status_code=status,
                        payload=self._body(response),
                    )
                delay = self._backoff_seconds(attempt, response.headers.get("Retry-After"))
                logger.warning(f"Tata {method} {path} returned {status}, retry {attempt + 1} in {delay:.2f}s")
                attempt += 1
                await self._sleep(delay)
                continue

            if status >= 400:
                body = self._body(response)
                message = body.get("message") if isinstance(body, dict) else None
                raise TataAPIError(
                    message or f"Tata API {method} {path} failed with {status}",
                    status_code=status,
                    payload=body,
                )

            body = self._body(response)
            return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    # =============================================================================
    # CALLS
    # =============================================================================

    async def click_to_call(
        self,
        agent_number: str,
        destination_number: str,
        caller_id: Optional[str] = None,
        custom_identifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "agent_number": agent_number,
            "destination_number": destination_number,
            "async": 1,
            "get_call_id": 1,
        }
        if caller_id:
            payload["caller_id"] = caller_id
        if custom_identifier:
            payload["custom_identifier"] = custom_identifier

        logger.info(f"📞 Click-to-call {agent_number} -> {destination_number} ({custom_identifier})")
        return await self._request("POST", "/v1/click_to_call", json=payload)

    async def schedule_callback(
        self,
        agent_number: str,
        destination_number: str,
        scheduled_at: datetime,
        custom_identifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "agent_number": agent_number,
            "destination_number": destination_number,
            "schedule_time": scheduled_at.strftime("%Y-%m-%d %H:%M:%S"),
        }
        if custom_identifier:
            payload["custom_identifier"] = custom_identifier
        return await self._request("POST", "/v1/schedule_callback", json=payload)

    async def fetch_cdr(self, from_date: str, to_date: str, page: int = 1, limit: int = 100) -> List[Dict[str, Any]]:
        """One page of call detail records between two YYYY-MM-DD dates"""
        data = await self._request(
            "GET", "/v1/call/records",
            params={"from_date": from_date, "to_date": to_date, "page": page, "limit": limit},
        )
        records = data.get("results") or data.get("data") or []
        return records if isinstance(records, list) else []

    async def get_recording(self, call_id: str) -> Optional[str]:
        """Recording URL of one call, None while the provider has not published it"""
        data = await self._request("GET", "/v1/call/records", params={"call_id": call_id, "limit": 1})
        records = data.get("results") or data.get("data") or []
        if isinstance(records, dict):
            records = [records]
        for record in records:
            url = record.get("recording_url") or record.get("recording")
            if url:
                return url
        return data.get("recording_url")

    # =============================================================================
    # LEAD LISTS AND CAMPAIGNS
    # =============================================================================

    async def create_lead_list(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        payload = {"name": name}
        if description:
            payload["description"] = description
        return await self._request("POST", "/v1/lead_list", json=payload)

    async def add_lead_to_list(self, list_id: str, lead: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/v1/lead_list/{list_id}/lead", json=lead)

    async def create_campaign(self, campaign: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/campaign", json=campaign)

    async def get_campaign(self, campaign_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/campaign/{campaign_id}")

    async def update_campaign_status(self, campaign_id: str, status: str) -> Dict[str, Any]:
        return await self._request("PUT", f"/v1/campaign/{campaign_id}/status", json={"status": status})

    async def get_dispositions(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/disposition_list")

    async def get_agents(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/agent")

    async def test_connection(self) -> Dict[str, Any]:
        """Force a login and report whether the credentials work"""
        try:
            result = await self.login()
            return {"success": True, "message": "Tata API connection OK", "expires_at": result["expires_at"]}
        except TataAPIError as e:
            logger.error(f"Tata connection test failed: {e.message}")
            return {"success": False, "message": e.message, "status_code": e.status_code}
