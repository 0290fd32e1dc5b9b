"""Small shared helpers: data paths and timestamp conversion."""

from __future__ import annotations

import os
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create directory if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Active data directory (``FEEDBACK_BRIDGE_DATA_DIR`` or ``~/.feedback-bridge``)."""
    raw = os.environ.get("FEEDBACK_BRIDGE_DATA_DIR", "").strip()
    base = Path(raw).expanduser() if raw else Path.home() / ".feedback-bridge"
    return ensure_dir(base)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def slack_ts_to_ms(ts: str | float | int | None) -> int:
    """Convert a Slack ``ts`` ("1712345678.123456") to integer epoch ms.

    Decimal keeps the microsecond part exact; float parsing would round
    some timestamps down by one millisecond.
    """
    raw = str(ts or "").strip()
    if not raw:
        return 0
    try:
        return int(Decimal(raw) * 1000)
    except InvalidOperation:
        return 0


def ms_to_slack_ts(value_ms: int) -> str:
    """Inverse of ``slack_ts_to_ms`` for ``oldest``/``latest`` API params."""
    if value_ms <= 0:
        return "0"
    return f"{Decimal(int(value_ms)) / 1000:.6f}"
