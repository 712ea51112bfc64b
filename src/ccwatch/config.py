"""Configuration management for CCWatch."""

import os
import shlex

from dotenv import load_dotenv

load_dotenv()


def _seconds(name: str, default: str) -> float:
    return float(os.getenv(name, default))


# Command used to launch ccusage; window arguments are appended to it.
CCUSAGE_COMMAND: list[str] = shlex.split(os.getenv("CCWATCH_CCUSAGE_COMMAND", "npx -y ccusage@latest"))
CCUSAGE_INSTALL_URL = "https://github.com/ryoppippi/ccusage"

# Timings (seconds)
REFRESH_INTERVAL = _seconds("CCWATCH_REFRESH_INTERVAL", "300")
STALE_AFTER = _seconds("CCWATCH_STALE_AFTER", "600")
FETCH_TIMEOUT = _seconds("CCWATCH_FETCH_TIMEOUT", "60")

API_PORT = int(os.getenv("CCWATCH_API_PORT", "8879"))

# Exact model identifiers and their short display names.
MODEL_LABELS: dict[str, str] = {
    "claude-opus-4-20250514": "Opus 4",
    "claude-sonnet-4-20250514": "Sonnet 4",
    "claude-3-5-sonnet-20241022": "Sonnet 3.5",
    "claude-3-haiku-20240307": "Haiku",
}

# Fallback family tokens, checked in order against the identifier.
MODEL_FAMILIES: tuple[tuple[str, str], ...] = (
    ("opus", "Opus"),
    ("sonnet", "Sonnet"),
    ("haiku", "Haiku"),
)
