"""
Relayer State Store — Advisory per-asset saga bookkeeping.

Holds one RelayerRecord per asset the relayer has seen reach full
approval. When a path is given, every update is flushed to a JSON file
so a restarted relayer can skip work it already finished.

The store is never authoritative: whether an asset is minted is always
answered by the mint gate itself.
"""

import json
import logging
import os
import tempfile
import threading
import time
from typing import Dict, List, Optional

from pydantic import ValidationError

from zkbridge.schemas.bridge import RelayerRecord

logger = logging.getLogger(__name__)


class RelayerStateStore:
    def __init__(self, path: Optional[str] = None) -> None:
        self._path = path
        self._records: Dict[int, RelayerRecord] = {}
        self._cursor: int = -1
        self._lock = threading.Lock()

    @property
    def path(self) -> Optional[str]:
        return self._path

    # ── Persistence ──

    def load(self) -> int:
        """Load persisted records. Returns the number of records restored."""
        if not self._path or not os.path.exists(self._path):
            return 0
        try:
            with open(self._path, "r") as f:
                raw = json.load(f)
            records = {
                int(k): RelayerRecord.model_validate(v)
                for k, v in raw.get("records", {}).items()
            }
        except (OSError, ValueError, ValidationError) as e:
            # Advisory data: a corrupt file only costs redundant work
            logger.warning(f"[RELAYER] Ignoring unreadable state file {self._path}: {e}")
            return 0

        with self._lock:
            self._records = records
            self._cursor = int(raw.get("cursor", -1))
        logger.info(f"[RELAYER] Restored {len(records)} record(s) from {self._path}")
        return len(records)

    def _flush(self) -> None:
        if not self._path:
            return
        payload = {
            "cursor": self._cursor,
            "records": {str(k): v.model_dump(mode="json") for k, v in self._records.items()},
        }
        directory = os.path.dirname(os.path.abspath(self._path))
        fd, tmp_path = tempfile.mkstemp(prefix=".relayer-state-", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self._path)
        except Exception:
            os.unlink(tmp_path)
            raise

    # ── Records ──

    def get(self, asset_id: int) -> Optional[RelayerRecord]:
        with self._lock:
            record = self._records.get(asset_id)
            return record.model_copy() if record is not None else None

    def all(self) -> List[RelayerRecord]:
        with self._lock:
            return [r.model_copy() for _, r in sorted(self._records.items())]

    def upsert(self, asset_id: int, **changes) -> RelayerRecord:
        """Apply `changes` to the asset's record, creating it if needed."""
        with self._lock:
            current = self._records.get(asset_id) or RelayerRecord(asset_id=asset_id)
            updated = current.model_copy(update={**changes, "updated_at": time.time()})
            self._records[asset_id] = updated
            self._flush()
            return updated.model_copy()

    # ── Feed cursor ──

    @property
    def cursor(self) -> int:
        return self._cursor

    def advance_cursor(self, cursor: int) -> None:
        with self._lock:
            if cursor > self._cursor:
                self._cursor = cursor
                self._flush()
