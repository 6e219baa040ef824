import os
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings
from common.circuit_breaker import breaker_timeout

class Settings(BaseSettings):
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    session_retention_seconds: int = int(os.getenv("SESSION_RETENTION_SECONDS", str(7 * 24 * 3600)))
    session_expiry_seconds: int = int(os.getenv("SESSION_EXPIRY_SECONDS", "86400"))
    payment_confirmations_required: int = int(os.getenv("PAYMENT_CONFIRMATIONS_REQUIRED", "3"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    events_enabled: bool = os.getenv("EVENTS_ENABLED", "true").lower() == "true"
    payment_events_topic: str = os.getenv("PAYMENT_EVENTS_TOPIC", "payment_session_events")
    event_stream_group: str = os.getenv("EVENT_STREAM_GROUP", "payment-event-stream")
    event_stream_poll_timeout_seconds: float = float(os.getenv("EVENT_STREAM_POLL_TIMEOUT_SECONDS", "1.0"))
    event_stream_queue_size: int = int(os.getenv("EVENT_STREAM_QUEUE_SIZE", "100"))

    zcash_rpc_url: str = os.getenv("ZCASH_RPC_URL", "http://zcashd:8232")
    zcash_rpc_username: Optional[str] = os.getenv("ZCASH_RPC_USERNAME")
    zcash_rpc_password: Optional[str] = os.getenv("ZCASH_RPC_PASSWORD")
    zcash_rpc_cookie_path: Optional[str] = os.getenv("ZCASH_RPC_COOKIE_PATH")
    zcash_rpc_timeout_seconds: float = float(os.getenv("ZCASH_RPC_TIMEOUT_SECONDS", "15"))
    zcash_address_type: str = os.getenv("ZCASH_ADDRESS_TYPE", "sapling")

    provider_api_base_url: str = os.getenv("PROVIDER_API_BASE_URL", "https://api.flashift.app/v1")
    provider_api_key: str = os.getenv("PROVIDER_API_KEY", "")
    provider_name: str = os.getenv("PROVIDER_NAME", "flashift")
    provider_fixed_rate: bool = os.getenv("PROVIDER_FIXED_RATE", "false").lower() == "true"
    provider_timeout_seconds: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))
    source_currency: str = os.getenv("SOURCE_CURRENCY", "zec")
    destination_currency: str = os.getenv("DESTINATION_CURRENCY", "sol")
    native_decimals: int = int(os.getenv("NATIVE_DECIMALS", "9"))

    merchant_webhook_url: Optional[str] = os.getenv("MERCHANT_WEBHOOK_URL")
    merchant_webhook_secret: Optional[str] = os.getenv("MERCHANT_WEBHOOK_SECRET")
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))
    sweep_concurrency: int = int(os.getenv("SWEEP_CONCURRENCY", "8"))
    settlement_lock_seconds: int = int(os.getenv("SETTLEMENT_LOCK_SECONDS", "60"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @model_validator(mode="after")
    def check_consistency(self):
        # Credentials must come as a pair, and never alongside a cookie file
        has_user = bool(self.zcash_rpc_username)
        has_password = bool(self.zcash_rpc_password)
        if has_user != has_password:
            raise ValueError("ZCASH_RPC_USERNAME and ZCASH_RPC_PASSWORD must both be provided")
        if self.zcash_rpc_cookie_path and has_user:
            raise ValueError("Provide either ZCASH_RPC_COOKIE_PATH or basic auth credentials, not both")
        if self.payment_confirmations_required < 1:
            raise ValueError("PAYMENT_CONFIRMATIONS_REQUIRED must be >= 1")
        if self.settlement_lock_seconds <= breaker_timeout(self.provider_timeout_seconds):
            raise ValueError(
                f"SETTLEMENT_LOCK_SECONDS must exceed the settlement call bound "
                f"({breaker_timeout(self.provider_timeout_seconds)}s)"
            )
        if self.session_expiry_seconds > self.session_retention_seconds:
            raise ValueError("SESSION_EXPIRY_SECONDS must not exceed SESSION_RETENTION_SECONDS")
        return self

settings = Settings()
