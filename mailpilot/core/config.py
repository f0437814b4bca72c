"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./mailpilot.db"

    # Token Encryption (for storing OAuth tokens)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Google OAuth client used to refresh mailbox tokens
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Gmail push (users.watch -> Pub/Sub -> /webhooks/google-gmail)
    GMAIL_PUSH_TOPIC: str = ""  # projects/<project>/topics/<topic>
    GMAIL_PUSH_LABEL_IDS: str = "INBOX"  # comma-separated
    GMAIL_PUSH_VERIFICATION_TOKEN: str = ""  # ?token= on the push subscription URL
    GMAIL_WATCH_RENEW_BEFORE_HOURS: int = 24

    # Gmail API calls
    GMAIL_HTTP_TIMEOUT_SECONDS: float = 30.0
    GMAIL_MAX_RETRIES: int = 5
    GMAIL_BACKOFF_CAP_SECONDS: float = 60.0
    THREAD_LIST_CACHE_TTL_SECONDS: float = 60.0

    # Public base URL for tracking pixels / click redirects
    API_BASE_URL: str = "http://localhost:8000"
    CLICK_FALLBACK_URL: str = "https://www.google.com"

    # Internal scheduled endpoints (cron jobs) and mailbox admin endpoints
    INTERNAL_SECRET: str = ""

    # Completion service
    AI_PROVIDER: str = "openai"  # openai | gemini
    AI_MODEL: str = ""  # Falls back to the provider default
    OPENAI_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    AI_TIMEOUT_SECONDS: float = 60.0
    TRIAGE_MAX_CHARS: int = 4000

    # Reconciliation
    # True acts only on the first added message of each history batch.
    RECONCILE_FIRST_MESSAGE_ONLY: bool = False

    # Read-receipt monitor
    READ_RECEIPT_GRACE_SECONDS: int = 60
    READ_RECEIPT_INTERVAL_SECONDS: int = 1800
    READ_RECEIPT_MAX_CHECKS: int = 48
    READ_RECEIPT_RECENCY_WINDOW_SECONDS: int = 300

    # Follow-up scheduler
    FOLLOW_UP_AFTER_HOURS: int = 24

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    WORKER_CONCURRENCY: int = 4

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 600
    REDIS_URL: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def gmail_push_label_ids_list(self) -> list[str]:
        """Parse GMAIL_PUSH_LABEL_IDS into a de-duplicated list."""
        out: list[str] = []
        for item in self.GMAIL_PUSH_LABEL_IDS.split(","):
            token = item.strip()
            if token and token not in out:
                out.append(token)
        return out

    @property
    def is_dev(self) -> bool:
        return self.ENV == "dev"


settings = Settings()
