# app/config/settings.py - Telephony reconciliation service configuration (Smartflo / Tata Tele)
from pydantic_settings import BaseSettings
from typing import List, Optional
import json
import os
from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv(override=True)

class Settings(BaseSettings):
    # App Config
    app_name: str = "LeadG Telephony API"
    version: str = "1.0.0"
    debug: bool = False

    # Security (tokens are issued by the CRM auth layer, we only verify them)
    secret_key: str = "your-secret-key-here"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440

    # MongoDB Configuration
    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "telecrm"

    # MongoDB Connection Options
    mongodb_max_pool_size: int = 10
    mongodb_min_pool_size: int = 1
    mongodb_max_idle_time_ms: int = 30000
    mongodb_server_selection_timeout_ms: int = 5000

    # Tata Tele (Smartflo) API Settings
    tata_api_base_url: str = "https://api-smartflo.tatateleservices.com"
    tata_email: Optional[str] = None
    tata_password: Optional[str] = None
    tata_api_timeout: int = 15
    tata_api_retries: int = 4
    tata_retry_base_ms: int = 500
    tata_encryption_key: Optional[str] = None
    tata_default_caller_id: Optional[str] = None

    # Webhook configuration
    tata_webhook_secret: Optional[str] = None
    tata_webhook_strict_signature: bool = False
    tata_webhook_allowed_ips: str = ""

    # Cache configuration
    cache_default_ttl: int = 300
    cache_check_period: int = 320
    cache_max_keys: int = 10000

    # Call reconciliation
    recording_fetch_delay_seconds: int = 30
    recording_fetch_max_attempts: int = 3
    short_call_threshold_seconds: int = 30
    callback_delay_hours: int = 24

    # Logging Configuration
    log_level: str = "INFO"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"

    def get_allowed_origins(self) -> List[str]:
        """Get allowed origins from env or default"""
        origins_str = os.getenv("ALLOWED_ORIGINS", '["http://localhost:3000", "http://127.0.0.1:3000"]')
        try:
            return json.loads(origins_str)
        except ValueError:
            return [origin.strip() for origin in origins_str.split(",")]

    def get_webhook_allowed_ips(self) -> List[str]:
        """Webhook IP allow-list, empty means every address is accepted"""
        return [ip.strip() for ip in self.tata_webhook_allowed_ips.split(",") if ip.strip()]

    def is_tata_configured(self) -> bool:
        """Check if Tata Tele integration is properly configured"""
        return bool(self.tata_email and self.tata_password)

    def get_tata_config(self) -> dict:
        """Get Tata Tele configuration dictionary (without secrets)"""
        return {
            "api_base_url": self.tata_api_base_url,
            "email": self.tata_email,
            "api_timeout": self.tata_api_timeout,
            "api_retries": self.tata_api_retries,
            "retry_base_ms": self.tata_retry_base_ms,
            "default_caller_id": self.tata_default_caller_id,
            "webhook_secret_configured": bool(self.tata_webhook_secret),
            "webhook_strict_signature": self.tata_webhook_strict_signature,
        }

# Global settings instance
settings = Settings()

def get_settings() -> Settings:
    """Get global settings instance - used by the Tata services"""
    return settings
