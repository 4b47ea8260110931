"""
Bridge Error Taxonomy.

Ledger-side failures are modeled as reverts: the call fails atomically and
no partial state survives. The relayer decides per class whether a revert
ends the saga, counts as success (AlreadyMinted) or is retried.

    BridgeRevertError
    ├── NotAuthorized         caller is not the registered role holder
    ├── AlreadyApproved       role flag already set for this asset
    ├── AlreadyMinted         token for this asset already issued
    ├── PublicInputMismatch   proof bound to a different asset id
    └── InvalidProof          verifier rejected the proof

    ProofGenerationFailed     proving capability could not produce a proof
    TransientLedgerError      ledger unreachable / submission timed out
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeRevertError(Exception):
    """
    Raised when a ledger operation reverts.

    Equivalent to a Solidity 'revert' — the call is rejected and the
    ledger state is unchanged.
    """

    gate: str = "revert"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"REVERT [{self.gate}]: {reason}")


class NotAuthorized(BridgeRevertError):
    gate = "not_authorized"


class AlreadyApproved(BridgeRevertError):
    gate = "already_approved"


class AlreadyMinted(BridgeRevertError):
    gate = "already_minted"


class PublicInputMismatch(BridgeRevertError):
    gate = "public_input_mismatch"


class InvalidProof(BridgeRevertError):
    gate = "invalid_proof"


class ProofGenerationFailed(Exception):
    """The proving capability failed or its witness was unavailable."""


class TransientLedgerError(Exception):
    """Ledger unreachable, dropped connection or submission timeout."""


# Substrings of on-chain revert messages, checked in order.
_REVERT_MARKERS = (
    ("already minted", AlreadyMinted),
    ("alreadyminted", AlreadyMinted),
    ("already approved", AlreadyApproved),
    ("alreadyapproved", AlreadyApproved),
    ("public input", PublicInputMismatch),
    ("publicinputmismatch", PublicInputMismatch),
    ("invalid proof", InvalidProof),
    ("invalid zk proof", InvalidProof),
    ("invalidproof", InvalidProof),
    ("not authorized", NotAuthorized),
    ("notauthorized", NotAuthorized),
    ("only agent", NotAuthorized),
    ("only bank", NotAuthorized),
    ("only housing", NotAuthorized),
)


def revert_from_reason(reason: str) -> BridgeRevertError:
    """
    Map a revert message returned by a ledger node to a typed error.

    Unknown messages become a plain BridgeRevertError so callers still
    see a revert rather than a transient failure.
    """
    lowered = (reason or "").lower()
    for marker, exc_type in _REVERT_MARKERS:
        if marker in lowered:
            return exc_type(reason)
    return BridgeRevertError(reason or "execution reverted")
