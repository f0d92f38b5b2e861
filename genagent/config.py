"""
Service configuration.

Frozen dataclass loaded from environment variables.
Loads ~/.genagent/shared.env first (storage credentials, common limits),
then ~/.genagent/<integration>.env (integration-specific overrides).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_PORTS: dict[str, int] = {
    "chatgpt": 3001,
    "midjourney": 3002,
    "veo": 3003,
    "ideogram": 3005,
}

_TRUE = ("1", "true", "yes", "on")


def _int(name: str, default: str) -> int:
    raw = os.environ.get(name, default).strip()
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(name: str, default: str) -> float:
    raw = os.environ.get(name, default).strip()
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class Config:
    """Immutable per-integration configuration."""

    integration: str

    # HTTP surface
    host: str
    port: int

    # Job core
    max_concurrent_jobs: int
    poll_interval_seconds: float
    poll_max_attempts: int
    submit_max_retries: int
    submit_backoff_seconds: float

    # Browser
    headless: bool
    browser_executable: str
    profile_dir: str
    navigation_timeout_seconds: float

    # Persistence
    db_path: str
    artifact_dir: str
    public_base_url: str

    # Supabase (optional)
    supabase_url: str
    supabase_service_role_key: str
    supabase_bucket: str
    supabase_table: str

    # Vendor specific
    chatgpt_url: str
    ideogram_token_url: str
    gemini_url: str
    google_email: str
    google_password: str

    # Logging
    log_level: str

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @classmethod
    def load(cls, integration: str | None = None) -> Config:
        """Load configuration from environment variables.

        Reads ~/.genagent/shared.env, then ~/.genagent/<integration>.env
        with override. Raises ValueError if the integration is missing or
        unknown, or if a numeric variable does not parse.
        """
        gen_dir = Path.home() / ".genagent"
        shared_env = gen_dir / "shared.env"
        if shared_env.exists():
            load_dotenv(shared_env)

        name = (integration or _str("GENAGENT_INTEGRATION")).lower()
        if not name:
            raise ValueError("Missing required environment variable: GENAGENT_INTEGRATION")
        if name not in DEFAULT_PORTS:
            raise ValueError(
                f"Unknown integration {name!r} (expected one of: {', '.join(sorted(DEFAULT_PORTS))})"
            )

        component_env = gen_dir / f"{name}.env"
        if component_env.exists():
            load_dotenv(component_env, override=True)

        port = _int("PORT", str(DEFAULT_PORTS[name]))
        max_jobs = _int("MAX_CONCURRENT_JOBS", "2")
        if max_jobs < 1:
            raise ValueError("MAX_CONCURRENT_JOBS must be at least 1")

        return cls(
            integration=name,
            host=_str("HOST", "0.0.0.0"),
            port=port,
            max_concurrent_jobs=max_jobs,
            poll_interval_seconds=_float("POLL_INTERVAL_SECONDS", "15"),
            poll_max_attempts=_int("POLL_MAX_ATTEMPTS", "24"),
            submit_max_retries=_int("SUBMIT_MAX_RETRIES", "3"),
            submit_backoff_seconds=_float("SUBMIT_BACKOFF_SECONDS", "2"),
            headless=_str("HEADLESS", "true").lower() in _TRUE,
            browser_executable=_str("BROWSER_EXECUTABLE"),
            profile_dir=_str("PROFILE_DIR"),
            navigation_timeout_seconds=_float("NAVIGATION_TIMEOUT_SECONDS", "60"),
            db_path=_str("DB_PATH", "genagent.db"),
            artifact_dir=_str("ARTIFACT_DIR", "artifacts"),
            public_base_url=_str("PUBLIC_BASE_URL", f"http://localhost:{port}").rstrip("/"),
            supabase_url=_str("SUPABASE_URL").rstrip("/"),
            supabase_service_role_key=_str("SUPABASE_SERVICE_ROLE_KEY"),
            supabase_bucket=_str("SUPABASE_BUCKET", "product-designs"),
            supabase_table=_str("SUPABASE_TABLE", "product_design"),
            chatgpt_url=_str(
                "CHATGPT_URL",
                "https://chatgpt.com/g/g-682b4c8d88848191accff36501109e7e-wowz-ai-assistant-remix-design",
            ),
            ideogram_token_url=_str("IDEOGRAM_TOKEN_URL"),
            gemini_url=_str("GEMINI_URL", "https://gemini.google.com/app"),
            google_email=_str("GOOGLE_EMAIL"),
            google_password=_str("GOOGLE_PASSWORD"),
            log_level=_str("LOG_LEVEL", "INFO").upper(),
        )
