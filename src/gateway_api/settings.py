from __future__ import annotations

from dataclasses import dataclass
from os import getenv

from dotenv import find_dotenv, load_dotenv


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


load_env()


def _env_bool(name: str) -> bool | None:
    raw = getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return None


def _env_flag(name: str, *, default: bool) -> bool:
    value = _env_bool(name)
    return default if value is None else value


def _optional_env(name: str) -> str | None:
    raw = getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _csv_env(name: str, *, default: str) -> tuple[str, ...]:
    raw = getenv(name, default)
    values = [item.strip() for item in raw.split(",")]
    clean = tuple(item for item in values if item)
    return clean or tuple(item for item in default.split(",") if item)


@dataclass(frozen=True)
class Settings:
    debug: bool = _env_flag("GW_DEBUG", default=False)
    log_level: str = getenv("GW_LOG_LEVEL", "INFO").strip().upper()
    log_json: bool = _env_flag("GW_LOG_JSON", default=True)
    base_path: str = getenv("GW_BASE_PATH", "/v1").rstrip("/")
    webhook_base_url: str = getenv("GW_WEBHOOK_BASE_URL", "http://localhost:8000/v1")
    upstream_timeout_sec: float = float(getenv("GW_UPSTREAM_TIMEOUT_SEC", "60"))

    # Tenant auth: JSON object of service key -> {"tenant_id", "max_spend_per_hour", "max_spend_per_month"}
    service_keys_json: str = getenv("GW_SERVICE_KEYS", "{}")

    # Providers
    openrouter_api_key: str | None = _optional_env("GW_OPENROUTER_API_KEY")
    openrouter_base_url: str = getenv("GW_OPENROUTER_BASE_URL", "https://openrouter.ai/api")
    replicate_api_token: str | None = _optional_env("GW_REPLICATE_API_TOKEN")
    replicate_base_url: str = getenv("GW_REPLICATE_BASE_URL", "https://api.replicate.com")
    replicate_max_poll_attempts: int = int(getenv("GW_REPLICATE_MAX_POLL_ATTEMPTS", "60"))
    replicate_poll_interval_sec: float = float(getenv("GW_REPLICATE_POLL_INTERVAL_SEC", "1.0"))
    elevenlabs_api_key: str | None = _optional_env("GW_ELEVENLABS_API_KEY")
    elevenlabs_base_url: str = getenv("GW_ELEVENLABS_BASE_URL", "https://api.elevenlabs.io")
    deepgram_api_key: str | None = _optional_env("GW_DEEPGRAM_API_KEY")
    deepgram_base_url: str = getenv("GW_DEEPGRAM_BASE_URL", "https://api.deepgram.com")
    twilio_account_sid: str | None = _optional_env("GW_TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = _optional_env("GW_TWILIO_AUTH_TOKEN")
    twilio_base_url: str = getenv("GW_TWILIO_BASE_URL", "https://api.twilio.com")
    twilio_default_twiml_url: str | None = _optional_env("GW_TWILIO_DEFAULT_TWIML_URL")
    # Adapter names tried first for capabilities more than one provider serves
    provider_order: tuple[str, ...] = _csv_env(
        "GW_PROVIDER_ORDER",
        default="openrouter,deepgram,replicate,elevenlabs,twilio",
    )

    # Pricing
    default_margin: str = getenv("GW_DEFAULT_MARGIN", "1.3")
    margin_rules_json: str = getenv("GW_MARGIN_RULES", "[]")
    credit_floors_json: str = getenv("GW_CREDIT_FLOORS", "{}")
    phone_cost_per_minute: str = getenv("GW_PHONE_COST_PER_MINUTE", "0.013")
    sms_cost: str = getenv("GW_SMS_COST", "0.0079")
    mms_cost: str = getenv("GW_MMS_COST", "0.02")
    number_monthly_cost: str = getenv("GW_NUMBER_MONTHLY_COST", "1.15")
    override_cache_ttl_sec: float = float(getenv("GW_OVERRIDE_CACHE_TTL_SEC", "60"))
    budget_cache_ttl_sec: float = float(getenv("GW_BUDGET_CACHE_TTL_SEC", "30"))

    # Metering
    meter_wal_path: str | None = _optional_env("GW_METER_WAL_PATH")
    meter_dlq_path: str | None = _optional_env("GW_METER_DLQ_PATH")
    meter_batch_size: int = int(getenv("GW_METER_BATCH_SIZE", "100"))
    meter_max_retries: int = int(getenv("GW_METER_MAX_RETRIES", "3"))
    meter_flush_interval_sec: float = float(getenv("GW_METER_FLUSH_INTERVAL_SEC", "1.0"))

    # Webhook anti-abuse
    sig_penalty_threshold: int = int(getenv("GW_SIG_PENALTY_THRESHOLD", "5"))
    sig_lockout_sec: int = int(getenv("GW_SIG_LOCKOUT_SEC", "900"))
    sig_decay_sec: int = int(getenv("GW_SIG_DECAY_SEC", "3600"))

    # Requests per minute per tenant
    rate_limit_llm: int = int(getenv("GW_RATE_LIMIT_LLM", "60"))
    rate_limit_image_gen: int = int(getenv("GW_RATE_LIMIT_IMAGE_GEN", "10"))
    rate_limit_audio_speech: int = int(getenv("GW_RATE_LIMIT_AUDIO_SPEECH", "30"))
    rate_limit_telephony: int = int(getenv("GW_RATE_LIMIT_TELEPHONY", "100"))

    # Burst protection per tenant instance
    circuit_breaker_max_requests: int = int(getenv("GW_CIRCUIT_BREAKER_MAX_REQUESTS", "100"))
    circuit_breaker_window_sec: float = float(getenv("GW_CIRCUIT_BREAKER_WINDOW_SEC", "10"))
    circuit_breaker_pause_sec: float = float(getenv("GW_CIRCUIT_BREAKER_PAUSE_SEC", "300"))

    # Request body limits in bytes
    body_limit_llm: int = int(getenv("GW_BODY_LIMIT_LLM", str(10 * 1024 * 1024)))
    body_limit_audio: int = int(getenv("GW_BODY_LIMIT_AUDIO", str(25 * 1024 * 1024)))
    body_limit_media: int = int(getenv("GW_BODY_LIMIT_MEDIA", str(10 * 1024 * 1024)))
    body_limit_telephony: int = int(getenv("GW_BODY_LIMIT_TELEPHONY", str(1024 * 1024)))

    # Ledger / meter persistence; in-memory collaborators when unset
    pg_dsn: str | None = _optional_env("GW_PG_DSN")
    pg_pool_min: int = int(getenv("GW_PG_POOL_MIN", "1"))
    pg_pool_max: int = int(getenv("GW_PG_POOL_MAX", "10"))

    def rate_limits(self) -> dict[str, int]:
        return {
            "llm": self.rate_limit_llm,
            "imageGen": self.rate_limit_image_gen,
            "audioSpeech": self.rate_limit_audio_speech,
            "telephony": self.rate_limit_telephony,
        }


def get_settings() -> Settings:
    return Settings()
