# -*- coding: utf-8 -*-
"""Short-window duplicate submission guard"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict

from config import app_config
from models import DedupEntry

logger = logging.getLogger(__name__)


def fingerprint(payload: Any) -> str:
    """md5 of the payload serialized in its own key order"""
    serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.md5(serialized.encode("utf-8")).hexdigest()


class RequestDeduplicator:
    """
    Rejects a payload seen within the last `window_ms`.

    Single-process and advisory only. A hit does not refresh the entry, so a
    payload is accepted again once the window from its first sighting passes.
    """

    def __init__(self, window_ms: int = None, clock: Callable[[], float] = time.monotonic):
        self.window_ms = window_ms if window_ms is not None else app_config.dedup_window_ms
        self._clock = clock
        self._entries: Dict[str, DedupEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _purge(self, now: float):
        window = self.window_ms / 1000.0
        expired = [key for key, entry in self._entries.items() if now - entry.inserted_at >= window]
        for key in expired:
            del self._entries[key]

    def is_duplicate(self, payload: Any) -> bool:
        now = self._clock()
        self._purge(now)

        key = fingerprint(payload)
        if key in self._entries:
            logger.warning(f"[Dedup] Duplicate request {key[:8]} rejected")
            return True

        self._entries[key] = DedupEntry(fingerprint=key, inserted_at=now)
        return False

    def clear(self):
        self._entries.clear()
