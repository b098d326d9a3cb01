import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "polling")
    # "rq": polling runs in an RQ worker; "inline": FastAPI background task (single process)
    POLL_MODE: str = os.getenv("POLL_MODE", "rq").lower()

    # Remote verification provider
    PROVIDER_BASE_URL: str = os.getenv(
        "PROVIDER_BASE_URL", "https://id-uat.authid.ai/IDCompleteBackendEngine/Default"
    ).rstrip("/")
    PROVIDER_IDP_URL: str = os.getenv(
        "PROVIDER_IDP_URL", "https://id-uat.authid.ai/IDCompleteBackendEngine/IdentityService/v1"
    ).rstrip("/")
    PROVIDER_PUBLIC_URL: str = os.getenv("PROVIDER_PUBLIC_URL", "https://id-uat.authid.ai")
    PROVIDER_API_KEY_ID: str = os.getenv("PROVIDER_API_KEY_ID", "")
    PROVIDER_API_KEY_VALUE: str = os.getenv("PROVIDER_API_KEY_VALUE", "")
    # Per-call timeout, independent of the polling budget
    PROVIDER_TIMEOUT_SEC: float = float(os.getenv("PROVIDER_TIMEOUT_SEC", "8.0"))
    PROVIDER_MAX_RETRIES: int = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))
    PROVIDER_BACKOFF_BASE_MS: int = int(os.getenv("PROVIDER_BACKOFF_BASE_MS", "250"))
    PROVIDER_BACKOFF_MAX_MS: int = int(os.getenv("PROVIDER_BACKOFF_MAX_MS", "2000"))

    # Hosted capture page that embeds the vendor component
    CAPTURE_WEB_URL: str = os.getenv("CAPTURE_WEB_URL", "http://localhost:3002")

    # Remote operation lifetimes (seconds)
    ENROLLMENT_TIMEOUT_SEC: int = int(os.getenv("ENROLLMENT_TIMEOUT_SEC", "3600"))
    AUTHENTICATION_TIMEOUT_SEC: int = int(os.getenv("AUTHENTICATION_TIMEOUT_SEC", "300"))
    AUTH_MIN_CONFIDENCE: float = float(os.getenv("AUTH_MIN_CONFIDENCE", "0.85"))
    AUTH_MAX_ATTEMPTS: int = int(os.getenv("AUTH_MAX_ATTEMPTS", "3"))

    # Completion detection: 2s interval, 240s wall clock / 120 attempts
    POLL_INTERVAL_SEC: float = float(os.getenv("POLL_INTERVAL_SEC", "2"))
    POLL_BUDGET_SEC: float = float(os.getenv("POLL_BUDGET_SEC", "240"))
    POLL_MAX_ATTEMPTS: int = int(os.getenv("POLL_MAX_ATTEMPTS", "120"))
    # Upper bound for the synchronous /complete call
    WAIT_DEADLINE_SEC: float = float(os.getenv("WAIT_DEADLINE_SEC", "25"))

    # Proof policy (this layer's thresholds, not the provider's)
    MATCH_SCORE_THRESHOLD: float = float(os.getenv("MATCH_SCORE_THRESHOLD", "0.80"))
    CONFIDENCE_SCORE_THRESHOLD: float = float(os.getenv("CONFIDENCE_SCORE_THRESHOLD", "0.85"))

    # Session credentials
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_ISSUER: str = os.getenv("JWT_ISSUER", "bioauth-broker")
    JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "bioauth-api")
    JWT_ACCESS_TTL_SEC: int = int(os.getenv("JWT_ACCESS_TTL_SEC", str(24 * 3600)))
    JWT_REFRESH_TTL_SEC: int = int(os.getenv("JWT_REFRESH_TTL_SEC", str(7 * 24 * 3600)))
    # How long issued tokens stay collectable from the status endpoint
    CREDENTIAL_PICKUP_TTL_SEC: int = int(os.getenv("CREDENTIAL_PICKUP_TTL_SEC", "300"))

    # Persistence
    OPERATION_RECORD_TTL_SEC: int = int(os.getenv("OPERATION_RECORD_TTL_SEC", str(7 * 24 * 3600)))
    OPERATION_LOCK_TTL_MS: int = int(os.getenv("OPERATION_LOCK_TTL_MS", "5000"))

    # Security & privacy
    ENABLE_LOG_REDACTION: bool = os.getenv("ENABLE_LOG_REDACTION", "true").lower() == "true"
    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

settings = Settings()
