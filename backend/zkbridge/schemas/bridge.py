"""
Bridge Schemas — Ledger records and relayer bookkeeping.

Approval and mint records mirror the storage layout of the two ledgers'
contracts. RelayerRecord is the relayer's process-local, advisory view of
a single asset's saga.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field


class Role(str, Enum):
    """The three fixed approver roles of the permissioned ledger."""
    AGENT = "Agent"
    BANK = "Bank"
    HOUSING_DEPT = "HousingDept"


class ApprovalState(BaseModel):
    """Per-asset approval flags. Absence of a record equals all-false."""
    agent: bool = False
    bank: bool = False
    housing_dept: bool = False
    fully_approved: bool = False

    def flag(self, role: Role) -> bool:
        return getattr(self, _ROLE_FIELDS[role])

    def as_tuple(self) -> Tuple[bool, bool, bool, bool]:
        return (self.agent, self.bank, self.housing_dept, self.fully_approved)


_ROLE_FIELDS: Dict[Role, str] = {
    Role.AGENT: "agent",
    Role.BANK: "bank",
    Role.HOUSING_DEPT: "housing_dept",
}


def role_field(role: Role) -> str:
    return _ROLE_FIELDS[role]


class MintRecord(BaseModel):
    """Public-ledger issuance record. Absence equals not minted."""
    asset_id: int
    minted: bool = False
    owner: Optional[str] = None
    proof_fingerprint: str = ""
    minted_at: Optional[float] = None


class RelayerStage(str, Enum):
    IDLE = "idle"
    NOTIFIED = "notified"
    PROVING = "proving"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FailureReason(str, Enum):
    PROOF_GENERATION_FAILED = "proof_generation_failed"
    INVALID_PROOF = "invalid_proof"
    PUBLIC_INPUT_MISMATCH = "public_input_mismatch"
    SUBMISSION_FAILED = "submission_failed"
    MINT_NOT_OBSERVED = "mint_not_observed"


class RelayerRecord(BaseModel):
    """Advisory relayer bookkeeping for one asset."""
    asset_id: int
    stage: RelayerStage = RelayerStage.IDLE
    proof_attempts: int = 0
    attempts: int = 0  # mint submissions
    last_error: str = ""
    failure_reason: Optional[FailureReason] = None
    proof_fingerprint: str = ""
    tx_hash: str = ""
    updated_at: float = Field(default_factory=time.time)


class RelayerHealth(BaseModel):
    """Aggregate relayer health for the observability surface."""
    running: bool = False
    registry_connected: bool = False
    mint_gate_connected: bool = False
    in_flight: int = 0
    confirmed: int = 0
    failed: int = 0
    last_event_index: int = -1
