"""
Approval Registry — Permissioned-Ledger Governance Contract.

Python equivalent of the house tokenizing governance contract deployed on
the permissioned ledger. Three fixed parties approve an asset; once all
three have approved, the registry emits a single FullyApproved
notification, which is the relayer's only trigger.

Three-Role Aggregation:
    ┌──────────────────────┐
    │ Agent        approve │──┐
    │ Bank         approve │──┼──→ all three set? ──→ FullyApproved(asset_id)
    │ HousingDept  approve │──┘                        (exactly once)
    └──────────────────────┘

Invariants:
    - Each role flag goes false→true at most once per asset; a repeat
      call reverts with AlreadyApproved instead of being ignored.
    - fully_approved == agent and bank and housing_dept, and never
      reverts to False.
    - The role table is fixed at construction.

Usage:
    registry = ApprovalRegistry({
        Role.AGENT: "0xed9d...", Role.BANK: "0xb30f...", Role.HOUSING_DEPT: "0x0886...",
    })
    registry.approve_as_agent(42, caller="0xed9d...")
    registry.get_approval_state(42)
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from zkbridge.core.errors import AlreadyApproved, NotAuthorized
from zkbridge.infrastructure.blockchain.ledger import EventLog
from zkbridge.schemas.bridge import ApprovalState, Role, role_field

logger = logging.getLogger(__name__)

APPROVED_EVENT = "Approved"
FULLY_APPROVED_EVENT = "FullyApproved"


def _normalize(address: str) -> str:
    return address.strip().lower()


class ApprovalRegistry:
    """
    Smart contract equivalent recording per-asset approvals from three roles.

    Each operation runs under the registry lock, so a call is atomic
    with respect to every other call on this registry: it either fully
    applies its state change and notifications, or reverts with no
    effect.
    """

    def __init__(
        self,
        roles: Mapping[Role, str],
        events: Optional[EventLog] = None,
    ) -> None:
        missing = [r.value for r in Role if not roles.get(r)]
        if missing:
            raise ValueError(f"Role address not configured: {', '.join(missing)}")

        normalized = {role: _normalize(roles[role]) for role in Role}
        if len(set(normalized.values())) != len(normalized):
            raise ValueError("A single address cannot hold more than one role")

        self._roles: Mapping[Role, str] = MappingProxyType(normalized)
        self._events = events or EventLog("permissioned")
        self._approvals: Dict[int, ApprovalState] = {}
        self._lock = threading.Lock()

    # ── Accessors ──

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def roles(self) -> Mapping[Role, str]:
        return self._roles

    # ── Approval (Main Entry Point) ──

    def approve(self, asset_id: int, caller: str, role: Role) -> ApprovalState:
        """
        Record `role`'s approval of `asset_id`.

        Args:
            asset_id: Asset identifier (unsigned integer).
            caller: Address submitting the call.
            role: The role the caller claims to act as.

        Returns:
            The approval state after the call.

        Raises:
            NotAuthorized: Caller is not the address bound to `role`.
            AlreadyApproved: `role` already approved `asset_id`.
        """
        if asset_id < 0:
            raise ValueError("asset_id must be an unsigned integer")

        if _normalize(caller) != self._roles[role]:
            logger.warning(
                f"[REGISTRY] REVERTED — {caller} is not the {role.value} "
                f"for house {asset_id}"
            )
            raise NotAuthorized(
                f"Only {role.value} can call this function",
                details={"asset_id": asset_id, "caller": caller, "role": role.value},
            )

        with self._lock:
            current = self._approvals.get(asset_id, ApprovalState())
            if current.flag(role):
                raise AlreadyApproved(
                    f"{role.value} already approved house {asset_id}",
                    details={"asset_id": asset_id, "role": role.value},
                )

            updated = current.model_copy(update={role_field(role): True})
            newly_aggregated = (
                not current.fully_approved
                and updated.agent and updated.bank and updated.housing_dept
            )
            if newly_aggregated:
                updated = updated.model_copy(update={"fully_approved": True})

            self._approvals[asset_id] = updated
            self._events.emit(
                APPROVED_EVENT, asset_id=asset_id, approver=caller, role=role.value,
            )
            if newly_aggregated:
                self._events.emit(FULLY_APPROVED_EVENT, asset_id=asset_id)

        logger.info(f"[REGISTRY] House {asset_id} approved by {role.value} ({caller})")
        if newly_aggregated:
            logger.info(f"[REGISTRY] House {asset_id} FULLY APPROVED")
        return updated

    def approve_as_agent(self, asset_id: int, caller: str) -> ApprovalState:
        return self.approve(asset_id, caller, Role.AGENT)

    def approve_as_bank(self, asset_id: int, caller: str) -> ApprovalState:
        return self.approve(asset_id, caller, Role.BANK)

    def approve_as_housing_dept(self, asset_id: int, caller: str) -> ApprovalState:
        return self.approve(asset_id, caller, Role.HOUSING_DEPT)

    # ── Views ──

    def get_approval_state(self, asset_id: int) -> ApprovalState:
        """Current flags for `asset_id`; unknown assets are all-false."""
        with self._lock:
            return self._approvals.get(asset_id, ApprovalState()).model_copy()

    def aggregated_assets(self) -> List[int]:
        """All asset ids that reached full approval, in ascending order."""
        with self._lock:
            return sorted(a for a, s in self._approvals.items() if s.fully_approved)
