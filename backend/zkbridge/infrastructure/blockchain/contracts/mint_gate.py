"""
Mint Gate — Public-Ledger Proof-Gated Token Contract.

Python equivalent of the ERC-1155 house token. A token for an asset is
minted only after a proof bound to that asset id verifies, and at most
once per asset id.

Three-Gate Mint:
    ┌────────────────────────────┐
    │ Gate 1: AlreadyMinted      │──→ asset id still unminted?
    │ Gate 2: PublicInputMismatch│──→ public_signals[0] == asset id?
    │ Gate 3: InvalidProof       │──→ embedded verifier accepts?
    └────────────────────────────┘
    If ANY gate fails → BridgeRevertError subclass (nothing minted)

Concurrency:
    The ledger's serialized execution is reproduced with a per-asset
    lock held across all three gates and the state update, so two
    concurrent submissions for the same asset cannot both pass gate 1.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Protocol

from zkbridge.core.errors import AlreadyMinted, InvalidProof, PublicInputMismatch
from zkbridge.infrastructure.blockchain.ledger import EventLog
from zkbridge.schemas.bridge import MintRecord
from zkbridge.schemas.zkp import ProofBundle

logger = logging.getLogger(__name__)

MINTED_EVENT = "Minted"
TOKEN_AMOUNT = 1


class ProofVerifier(Protocol):
    def verify(self, bundle: ProofBundle) -> bool: ...


class KeyedLock:
    """Lazily created lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, key: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield


class MintGate:
    """
    Smart contract equivalent enforcing verify-then-mint, exactly once.

    Usage:
        gate = MintGate(verifier=SnarkjsVerifier(...))
        gate.mint_with_proof(42, bundle, recipient="0xabc...")
        gate.is_minted(42)
    """

    def __init__(
        self,
        verifier: ProofVerifier,
        events: Optional[EventLog] = None,
        base_uri: str = "",
    ) -> None:
        self._verifier = verifier
        self._events = events or EventLog("public")
        self._base_uri = base_uri
        self._records: Dict[int, MintRecord] = {}
        self._locks = KeyedLock()

    @property
    def events(self) -> EventLog:
        return self._events

    # ── Mint (Main Entry Point) ──

    def mint_with_proof(
        self,
        asset_id: int,
        bundle: ProofBundle,
        recipient: str,
    ) -> MintRecord:
        """
        Verify `bundle` against `asset_id` and mint one token to `recipient`.

        Raises:
            AlreadyMinted: A token for `asset_id` already exists.
            PublicInputMismatch: The proof is bound to another asset id.
            InvalidProof: The embedded verifier rejected the proof.
        """
        with self._locks.hold(asset_id):
            existing = self._records.get(asset_id)
            if existing is not None and existing.minted:
                raise AlreadyMinted(
                    f"Token already minted for house {asset_id}",
                    details={"asset_id": asset_id, "owner": existing.owner},
                )

            bound_id = bundle.public_asset_id()
            if bound_id != asset_id:
                logger.warning(
                    f"[MINT] REVERTED — public input {bundle.public_signals[:1]} "
                    f"does not match house {asset_id}"
                )
                raise PublicInputMismatch(
                    "Public input does not match houseId",
                    details={"asset_id": asset_id, "public_signals": bundle.public_signals},
                )

            if not self._verifier.verify(bundle):
                logger.warning(f"[MINT] REVERTED — invalid proof for house {asset_id}")
                raise InvalidProof(
                    "Invalid ZK proof",
                    details={"asset_id": asset_id},
                )

            fingerprint = bundle.fingerprint()
            record = MintRecord(
                asset_id=asset_id,
                minted=True,
                owner=recipient,
                proof_fingerprint=fingerprint,
                minted_at=time.time(),
            )
            self._records[asset_id] = record
            self._events.emit(
                MINTED_EVENT,
                asset_id=asset_id,
                recipient=recipient,
                proof_fingerprint=fingerprint,
            )

        logger.info(
            f"[MINT] House {asset_id} minted to {recipient} "
            f"proof={fingerprint[:16]}..."
        )
        return record

    # ── Views ──

    def is_minted(self, asset_id: int) -> bool:
        record = self._records.get(asset_id)
        return record is not None and record.minted

    def owner_of(self, asset_id: int) -> Optional[str]:
        record = self._records.get(asset_id)
        return record.owner if record is not None and record.minted else None

    def balance_of(self, account: str, asset_id: int) -> int:
        owner = self.owner_of(asset_id)
        if owner is None:
            return 0
        return TOKEN_AMOUNT if owner.lower() == account.lower() else 0

    def get_record(self, asset_id: int) -> MintRecord:
        record = self._records.get(asset_id)
        return record.model_copy() if record is not None else MintRecord(asset_id=asset_id)

    @property
    def total_minted(self) -> int:
        return sum(1 for r in self._records.values() if r.minted)

    def uri(self, asset_id: int) -> str:
        """Metadata URI, ERC-1155 `{id}` substitution as lowercase 64-hex."""
        return self._base_uri.replace("{id}", f"{asset_id:064x}")
