"""Client configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Always resolve .env relative to the project root, no matter where the CLI is started from
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """Client settings — all values sourced from env / .env file."""

    DEBUG: bool = False

    # ── API ─────────────────────────────────────────────────────────────
    API_BASE_URL: str = "http://localhost:8000/api"
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # ── Credential storage ──────────────────────────────────────────────
    CREDENTIAL_BACKEND: str = "file"  # file | redis | memory
    CREDENTIAL_FILE: Path = Path.home() / ".quiz_client" / "credentials.json"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_NAMESPACE: str = "quiz_client"

    # ── Quiz session timing ─────────────────────────────────────────────
    AUTOSAVE_DEBOUNCE_SECONDS: float = 1.5
    TIMER_TICK_SECONDS: float = 1.0
    # Deadline-triggered finalize keeps retrying; the delay doubles up to the max.
    FINALIZE_RETRY_SECONDS: float = 2.0
    FINALIZE_RETRY_MAX_SECONDS: float = 30.0

    model_config = {"env_file": str(_ENV_FILE), "case_sensitive": True, "extra": "ignore"}


settings = Settings()
