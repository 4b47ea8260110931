"""
ZK Approval Bridge Infrastructure Module.

Exports the ledger-side components of the bridge:
    - ApprovalRegistry: Three-role approval contract (permissioned ledger)
    - MintGate: Proof-gated, exactly-once token contract (public ledger)
    - EventLog: Replayable, hash-chained notification history per ledger
    - SnarkjsProofService / SnarkjsVerifier: Groth16 proving capability
"""

from zkbridge.infrastructure.blockchain.ledger import (
    EventLog,
    LedgerEvent,
    IntegrityReport,
)
from zkbridge.infrastructure.blockchain.contracts.approval_registry import (
    ApprovalRegistry,
    APPROVED_EVENT,
    FULLY_APPROVED_EVENT,
)
from zkbridge.infrastructure.blockchain.contracts.mint_gate import (
    MintGate,
    MINTED_EVENT,
)
from zkbridge.infrastructure.zkp.zkp_service import (
    ProofService,
    SnarkjsProofService,
    SnarkjsVerifier,
)

__all__ = [
    "EventLog",
    "LedgerEvent",
    "IntegrityReport",
    "ApprovalRegistry",
    "APPROVED_EVENT",
    "FULLY_APPROVED_EVENT",
    "MintGate",
    "MINTED_EVENT",
    "ProofService",
    "SnarkjsProofService",
    "SnarkjsVerifier",
]
