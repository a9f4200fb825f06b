import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        site_url: str,
        currency: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_days: int,
        recovery_token_ttl_secs: int,
        require_email_confirmation: bool,
        min_password_length: int,
        whitelist_roles: dict[str, str],
        ai_endpoint: str,
        ai_api_key: str,
        ai_model: str,
        ai_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.site_url = site_url
        self.currency = currency
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_days = refresh_token_ttl_days
        self.recovery_token_ttl_secs = recovery_token_ttl_secs
        self.require_email_confirmation = require_email_confirmation
        self.min_password_length = min_password_length
        self.whitelist_roles = whitelist_roles
        self.ai_endpoint = ai_endpoint
        self.ai_api_key = ai_api_key
        self.ai_model = ai_model
        self.ai_timeout_secs = ai_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_whitelist_roles(raw: str) -> dict[str, str]:
    """Parse ``email:role`` pairs separated by commas into an email -> role map."""
    roles: dict[str, str] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        email, _, role = chunk.partition(":")
        email = email.strip().lower()
        if not email:
            continue
        roles[email] = (role.strip() or "member").lower()
    return roles


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Warsaw")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f0c5a9e1d7b42c68e2a4f91b0d6c37e8a15f2d49c0b7e6a3d81f5c2e9b04a76",
    )
    site_url = os.getenv("FINANCE_SITE_URL", "http://localhost:8000").rstrip("/")
    currency = os.getenv("FINANCE_CURRENCY", "PLN")
    access_token_ttl_secs = int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "3600"))
    refresh_token_ttl_days = int(os.getenv("FINANCE_REFRESH_TOKEN_TTL_DAYS", "30"))
    recovery_token_ttl_secs = int(
        os.getenv("FINANCE_RECOVERY_TOKEN_TTL_SECS", "3600")
    )
    require_email_confirmation = _env_flag("FINANCE_REQUIRE_EMAIL_CONFIRMATION", True)
    min_password_length = int(os.getenv("FINANCE_MIN_PASSWORD_LENGTH", "6"))
    whitelist_roles = parse_whitelist_roles(os.getenv("FINANCE_WHITELIST", ""))
    ai_endpoint = os.getenv(
        "FINANCE_AI_ENDPOINT", "https://api.openai.com/v1/chat/completions"
    )
    ai_api_key = os.getenv("FINANCE_AI_API_KEY", "")
    ai_model = os.getenv("FINANCE_AI_MODEL", "gpt-4o-mini")
    ai_timeout_secs = float(os.getenv("FINANCE_AI_TIMEOUT_SECS", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        site_url=site_url,
        currency=currency,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_days=refresh_token_ttl_days,
        recovery_token_ttl_secs=recovery_token_ttl_secs,
        require_email_confirmation=require_email_confirmation,
        min_password_length=min_password_length,
        whitelist_roles=whitelist_roles,
        ai_endpoint=ai_endpoint,
        ai_api_key=ai_api_key,
        ai_model=ai_model,
        ai_timeout_secs=ai_timeout_secs,
    )
