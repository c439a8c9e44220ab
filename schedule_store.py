import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional

import config
from errors import StaleAggregateError
from models import ScheduleAggregate
from normalizer import aggregate_from_records

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    Per-user schedule aggregate backed by a JSON file.

    The aggregate is read and written as a whole. Writes can be made
    conditional on the version that was read; lock_for() hands out one
    asyncio.Lock per user so a request can hold it across read-resolve-write.
    """

    FILE_TEMPLATE = "schedule_{user_id}.json"

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir or config.DATA_DIR)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _path(self, user_id: str) -> Path:
        return self.data_dir / self.FILE_TEMPLATE.format(user_id=user_id)

    # ── persistence ──────────────────────────────────────────────────

    def _load_raw(self, user_id: str) -> Optional[dict]:
        path = self._path(user_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def get_schedule_aggregate(self, user_id: str) -> ScheduleAggregate:
        """Stored aggregate, or an empty one at version 0. Malformed entries are dropped on load."""
        return aggregate_from_records(user_id, self._load_raw(user_id))

    def put_schedule_aggregate(
        self,
        user_id: str,
        aggregate: ScheduleAggregate,
        expected_version: Optional[int] = None,
    ) -> ScheduleAggregate:
        """
        Write the whole aggregate and return it with its new version.
        With expected_version set, the write is rejected (StaleAggregateError)
        unless the stored version still equals it.
        """
        raw = self._load_raw(user_id) or {}
        current = int(raw.get("version", 0) or 0)
        if expected_version is not None and expected_version != current:
            raise StaleAggregateError(user_id, expected_version, current)

        stored = aggregate.model_copy(update={"user_id": user_id, "version": current + 1})
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self._path(user_id), "w", encoding="utf-8") as f:
            json.dump(stored.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
        logger.info("stored schedule for %s at version %d", user_id, stored.version)
        return stored

    # ── locking ──────────────────────────────────────────────────────

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock
