"""
Ledger Ports — What the relayer needs from each ledger.

The relayer talks to the permissioned ledger through an ApprovalFeed and
to the public ledger through a MintGatePort. Both live chains
(web3_service) and the in-process contracts satisfy these.

Cursors are opaque, monotonically increasing integers (event index for
the in-process log, block number for a live chain). A feed resumed at
cursor N re-delivers everything at or after N.
"""

from typing import AsyncIterator, List, Protocol, Tuple

from zkbridge.infrastructure.blockchain.contracts.approval_registry import (
    FULLY_APPROVED_EVENT,
    ApprovalRegistry,
)
from zkbridge.infrastructure.blockchain.contracts.mint_gate import MintGate
from zkbridge.schemas.zkp import ProofBundle


class ApprovalFeed(Protocol):
    def is_connected(self) -> bool: ...

    def aggregated_assets(self) -> List[int]: ...

    def events(self, from_cursor: int = 0) -> AsyncIterator[Tuple[int, int]]: ...


class MintGatePort(Protocol):
    def is_connected(self) -> bool: ...

    def is_minted(self, asset_id: int) -> bool: ...

    def mint_with_proof(self, asset_id: int, bundle: ProofBundle, recipient: str) -> str: ...


class InProcessApprovalFeed:
    """Feed over an in-process ApprovalRegistry's event log."""

    def __init__(self, registry: ApprovalRegistry) -> None:
        self._registry = registry

    def is_connected(self) -> bool:
        return True

    def aggregated_assets(self) -> List[int]:
        return self._registry.aggregated_assets()

    async def events(self, from_cursor: int = 0) -> AsyncIterator[Tuple[int, int]]:
        sub = self._registry.events.subscribe(FULLY_APPROVED_EVENT, from_index=from_cursor)
        try:
            async for event in sub:
                yield event.index, int(event.args["asset_id"])
        finally:
            sub.close()


class InProcessMintGate:
    """MintGatePort over an in-process MintGate. Returns the proof fingerprint."""

    def __init__(self, gate: MintGate) -> None:
        self._gate = gate

    def is_connected(self) -> bool:
        return True

    def is_minted(self, asset_id: int) -> bool:
        return self._gate.is_minted(asset_id)

    def mint_with_proof(self, asset_id: int, bundle: ProofBundle, recipient: str) -> str:
        return self._gate.mint_with_proof(asset_id, bundle, recipient).proof_fingerprint
