from __future__ import annotations

import time
from datetime import UTC, datetime


class FeedEngineError(Exception):
    pass


class StorageUnavailableError(FeedEngineError):
    """The durable store could not be read or written."""


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def epoch_ms_now() -> int:
    return int(time.time() * 1000)
