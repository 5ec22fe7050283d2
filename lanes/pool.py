# -*- coding: utf-8 -*-
"""
Token pool: the lanes loaded for this process, with round-robin and
by-name selection.
"""

import logging
from typing import List, Optional, Dict, Any

from config import ambient_credentials
from models import CredentialRecord

logger = logging.getLogger(__name__)


def default_record_from_env() -> CredentialRecord:
    """The implicit default lane, built from FLOW_* environment variables"""
    return CredentialRecord.from_dict(ambient_credentials())


class TokenPool:
    """
    Ordered lanes plus a round-robin cursor.

    Round-robin spreads independent requests across accounts. A chain
    (generate -> poll -> update scene) must use by_name() so every call stays
    on the account that owns the operation handles.
    """

    def __init__(self, store, default_record: Optional[CredentialRecord] = None):
        self.store = store
        self.default_record = default_record or default_record_from_env()
        self._records: List[CredentialRecord] = []
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._records)

    @property
    def names(self) -> List[str]:
        return [r.name for r in self._records]

    def load_pool(self, names: List[str]) -> List[str]:
        """Replace the pool with the named lanes. Unknown names are skipped."""
        by_name = {r.name: r for r in self.store.list_all()}
        records = []
        for name in names:
            record = by_name.get(name)
            if record is None:
                logger.warning(f"[Pool] Lane '{name}' not found in credential store, skipping")
                continue
            records.append(record)

        self._records = records
        self._cursor = 0
        logger.info(f"[Pool] Loaded {len(records)} lane(s): {', '.join(self.names) or '-'}")
        return self.names

    def next(self) -> CredentialRecord:
        """Next lane in round-robin order, or the default lane when the pool is empty"""
        if not self._records:
            return self.default_record
        record = self._records[self._cursor % len(self._records)]
        self._cursor = (self._cursor + 1) % len(self._records)
        logger.debug(f"[Pool] next -> {record.name}")
        return record

    def by_name(self, name: Optional[str]) -> CredentialRecord:
        if not name:
            return self.next()
        for record in self._records:
            if record.name == name:
                return record
        fallback = self.next()
        logger.warning(f"[Pool] Lane '{name}' not in pool, using '{fallback.name}' instead")
        return fallback

    def reset(self):
        self._records = []
        self._cursor = 0
        logger.info("[Pool] Reset")

    def status(self) -> Dict[str, Any]:
        return {
            "size": len(self._records),
            "cursor": self._cursor,
            "lanes": [r.to_dict() for r in self._records],
            "using_default": not self._records,
            "default_lane": self.default_record.name,
        }
