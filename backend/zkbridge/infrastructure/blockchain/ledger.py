"""
EventLog — Replayable Ledger Notification Channel.

Each simulated ledger owns one EventLog. Contract operations append
notifications synchronously inside their atomic state transition; the
relayer consumes them through subscriptions.

Architecture:
    ┌──────────────────────────────────────────────────────┐
    │  EventLog (one per ledger)                           │
    │  ┌──────────┐  ┌──────────────┐  ┌───────────────┐  │
    │  │ emit()   │→ │ hash chain   │→ │ Subscriptions │  │
    │  │ (sync)   │  │ (append-only)│  │ (asyncio.Queue│  │
    │  └──────────┘  └──────────────┘  │  per consumer)│  │
    │                                  └───────────────┘  │
    └──────────────────────────────────────────────────────┘

Delivery Semantics:
    - At-least-once. A subscription opened at cursor N first receives
      the backlog from N, then live entries. Reconnecting consumers
      re-observe past entries and must deduplicate.
    - Each entry's hash includes the previous entry's hash, so replayed
      history can be checked for tampering with verify_integrity().

Usage:
    log = EventLog("permissioned")
    log.emit("FullyApproved", asset_id=42)
    async for event in log.subscribe("FullyApproved", from_index=0):
        ...
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════════

GENESIS_HASH = "0" * 64  # SHA-256 zero hash for the genesis entry


# ═══════════════════════════════════════════════════════════════════════════════
# DATA MODELS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LedgerEvent:
    """
    A single immutable notification in a ledger's history.

    The chain guarantee comes from including the previous entry's hash
    in this entry's digest.
    """
    index: int
    name: str
    args: Dict[str, Any]
    timestamp: str  # ISO-8601 UTC
    previous_hash: str
    entry_hash: str

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-safe dictionary."""
        return {
            "index": self.index,
            "name": self.name,
            "args": self.args,
            "timestamp": self.timestamp,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }


class IntegrityReport(BaseModel):
    """Result of a full chain integrity verification."""
    is_valid: bool = True
    chain_length: int = 0
    first_invalid_index: int = -1
    error_message: str = ""
    verified_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _compute_entry_hash(
    index: int,
    name: str,
    args: Dict[str, Any],
    timestamp: str,
    previous_hash: str,
) -> str:
    """
    Compute the SHA-256 digest of an event.

    The hash binds ALL fields — any modification to any field
    produces a different hash, breaking the chain.
    """
    canonical = json.dumps(
        {
            "index": index,
            "name": name,
            "args": args,
            "timestamp": timestamp,
            "previous_hash": previous_hash,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return _sha256(canonical)


# ═══════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTION
# ═══════════════════════════════════════════════════════════════════════════════

class Subscription:
    """
    Async iterator over events of one name, backlog first then live.

    Entries are handed over through an asyncio.Queue bound to the loop
    the subscription was opened on, so emit() may be called from any
    thread.
    """

    def __init__(self, log: EventLog, name: Optional[str]) -> None:
        self._log = log
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: LedgerEvent) -> None:
        if self._closed:
            return
        if self.name is not None and event.name != self.name:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _drop(self) -> None:
        """Called by the log when it severs the connection."""
        self._closed = True
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)

    def close(self) -> None:
        if not self._closed:
            self._log._unregister(self)
            self._closed = True

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> LedgerEvent:
        event = await self._queue.get()
        if event is None:
            raise ConnectionError(f"subscription to '{self._log.ledger_name}' dropped")
        return event


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ═══════════════════════════════════════════════════════════════════════════════

class EventLog:
    """
    Append-only notification history of one ledger.

    Thread Safety:
        emit() and subscription registration share one lock, so a new
        subscriber never misses an entry between its backlog and its
        live feed.
    """

    def __init__(self, ledger_name: str = "ledger") -> None:
        self.ledger_name = ledger_name
        self._chain: List[LedgerEvent] = []
        self._subscribers: List[Subscription] = []
        self._lock = threading.RLock()

    # ── Write Interface ──

    def emit(self, name: str, **args: Any) -> LedgerEvent:
        """Append a notification and fan it out to live subscribers."""
        with self._lock:
            index = len(self._chain)
            previous_hash = self._chain[-1].entry_hash if self._chain else GENESIS_HASH
            timestamp = datetime.now(timezone.utc).isoformat()
            entry_hash = _compute_entry_hash(index, name, args, timestamp, previous_hash)
            event = LedgerEvent(
                index=index,
                name=name,
                args=dict(args),
                timestamp=timestamp,
                previous_hash=previous_hash,
                entry_hash=entry_hash,
            )
            self._chain.append(event)
            for sub in list(self._subscribers):
                sub._deliver(event)

        logger.debug(
            f"[EVENTS] {self.ledger_name}#{index} {name} {args} "
            f"hash={entry_hash[:16]}..."
        )
        return event

    # ── Read Interface ──

    @property
    def length(self) -> int:
        return len(self._chain)

    def replay(self, from_index: int = 0, name: Optional[str] = None) -> List[LedgerEvent]:
        """Return past entries from a cursor, optionally filtered by name."""
        with self._lock:
            snapshot = self._chain[max(from_index, 0):]
        if name is None:
            return list(snapshot)
        return [e for e in snapshot if e.name == name]

    def subscribe(self, name: Optional[str] = None, from_index: int = 0) -> Subscription:
        """
        Open a subscription. Must be called from a running event loop.

        The backlog from `from_index` is queued before any live entry.
        """
        sub = Subscription(self, name)
        with self._lock:
            for event in self._chain[max(from_index, 0):]:
                sub._deliver(event)
            self._subscribers.append(sub)
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def disconnect_all(self) -> None:
        """Sever every live subscription, as a node restart would."""
        with self._lock:
            subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub._drop()
        logger.warning(f"[EVENTS] {self.ledger_name}: dropped {len(subs)} subscriber(s)")

    def _unregister(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    # ── Integrity Verification ──

    def verify_integrity(self) -> IntegrityReport:
        """Recompute every entry hash and check the chain linkage."""
        with self._lock:
            chain = list(self._chain)

        for i, entry in enumerate(chain):
            expected_prev = GENESIS_HASH if i == 0 else chain[i - 1].entry_hash
            if entry.previous_hash != expected_prev:
                return IntegrityReport(
                    is_valid=False,
                    chain_length=len(chain),
                    first_invalid_index=i,
                    error_message=f"Chain break at index {i}: previous_hash mismatch",
                )
            recomputed = _compute_entry_hash(
                entry.index, entry.name, entry.args, entry.timestamp, entry.previous_hash,
            )
            if recomputed != entry.entry_hash:
                return IntegrityReport(
                    is_valid=False,
                    chain_length=len(chain),
                    first_invalid_index=i,
                    error_message=f"Hash mismatch at index {i}: entry tampered",
                )

        return IntegrityReport(is_valid=True, chain_length=len(chain))
