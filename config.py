"""Environment driven configuration for the session scanners."""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def codex_home() -> Path:
    """Codex data root; read at call time so tests can override CODEX_HOME."""
    return Path(os.environ.get("CODEX_HOME", Path.home() / ".codex")).expanduser()


def claude_config_dirs() -> list[str]:
    """Raw Claude config roots: CLAUDE_CONFIG_DIR entries first, then the defaults."""
    dirs: list[str] = []
    env = os.environ.get("CLAUDE_CONFIG_DIR", "")
    dirs.extend(part.strip() for part in env.split(",") if part.strip())
    dirs.append(str(Path.home() / ".config" / "claude"))
    dirs.append(str(Path.home() / ".claude"))
    return dirs


# Scan bounds
CODEX_SCAN_CAP = _env_int("AGENT_SESSIONS_SCAN_CAP", 500)
CODEX_HEAD_RECORDS = _env_int("AGENT_SESSIONS_HEAD_RECORDS", 10)
CLAUDE_HEAD_RECORDS = 20

# Logging
LOG_LEVEL = os.getenv("AGENT_SESSIONS_LOG_LEVEL", "WARNING")
LOG_FILE = os.getenv("AGENT_SESSIONS_LOG_FILE") or None

# Pricing
PRICING_URL = os.getenv(
    "AGENT_SESSIONS_PRICING_URL",
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json",
)
PRICING_TIMEOUT = _env_float("AGENT_SESSIONS_PRICING_TIMEOUT", 15.0)
