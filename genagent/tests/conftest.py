"""Shared pytest configuration for genagent tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so `genagent` imports without installing.
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

_CONFIG_KEYS = [
    "GENAGENT_INTEGRATION", "HOST", "PORT", "MAX_CONCURRENT_JOBS",
    "POLL_INTERVAL_SECONDS", "POLL_MAX_ATTEMPTS", "SUBMIT_MAX_RETRIES",
    "SUBMIT_BACKOFF_SECONDS", "HEADLESS", "BROWSER_EXECUTABLE", "PROFILE_DIR",
    "NAVIGATION_TIMEOUT_SECONDS", "DB_PATH", "ARTIFACT_DIR", "PUBLIC_BASE_URL",
    "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_BUCKET",
    "SUPABASE_TABLE", "CHATGPT_URL", "IDEOGRAM_TOKEN_URL", "GEMINI_URL",
    "GOOGLE_EMAIL", "GOOGLE_PASSWORD", "LOG_LEVEL",
]


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Clear every config variable and point HOME at an empty directory."""
    for key in _CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path
