"""
Bridge Wiring — Assembles the relayer against live or in-process ledgers.

Two assemblies:
    build_relayer(settings)   → web3 clients from the deployment record,
                                snarkjs prover, attestation witnesses
    LocalBridge               → in-process registry + mint gate sharing
                                one prover; used by demos and tests

Usage:
    bridge = LocalBridge.create(roles, prover, witnesses, RelayerConfig(recipient="0x…"))
    await bridge.relayer.start()
    bridge.registry.approve_as_agent(42, caller=roles[Role.AGENT])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from zkbridge.infrastructure.blockchain.contracts.approval_registry import ApprovalRegistry
from zkbridge.infrastructure.blockchain.contracts.mint_gate import MintGate, ProofVerifier
from zkbridge.infrastructure.blockchain.deployment import load_deployment
from zkbridge.infrastructure.blockchain.web3_service import (
    Web3ApprovalRegistryClient,
    Web3MintGateClient,
)
from zkbridge.infrastructure.zkp.witness import WitnessSource, witness_source_from_settings
from zkbridge.infrastructure.zkp.zkp_service import ProofService, SnarkjsProofService
from zkbridge.schemas.bridge import Role
from zkbridge.services.ledger_ports import InProcessApprovalFeed, InProcessMintGate
from zkbridge.services.relayer import RelayerConfig, RelayerService
from zkbridge.services.relayer_state import RelayerStateStore

logger = logging.getLogger(__name__)


def build_relayer(settings) -> RelayerService:
    """Relayer against the deployed contracts named in the deployment record."""
    record = load_deployment(settings.DEPLOYMENT_RECORD_PATH)
    record.require("approval_registry", "mint_gate")

    feed = Web3ApprovalRegistryClient(
        record.quorum_rpc_url or settings.QUORUM_RPC_URL,
        record.approval_registry,
        poll_interval=settings.MINT_POLL_INTERVAL_SECONDS,
    )
    gate = Web3MintGateClient(
        settings.HARDHAT_RPC_URL,
        record.mint_gate,
        private_key=settings.RELAYER_PRIVATE_KEY,
    )
    logger.info(
        f"[BRIDGE] Registry {record.approval_registry} @ {feed.rpc_url} → "
        f"MintGate {record.mint_gate} @ {gate.rpc_url}"
    )
    return RelayerService(
        feed=feed,
        mint_gate=gate,
        prover=SnarkjsProofService(),
        witnesses=witness_source_from_settings(settings),
        config=RelayerConfig.from_settings(settings),
        state=RelayerStateStore(settings.RELAYER_STATE_PATH),
    )


class _ProverAsVerifier:
    """Lets the mint gate reuse a ProofService's verifier."""

    def __init__(self, prover: ProofService) -> None:
        self._prover = prover

    def verify(self, bundle) -> bool:
        return self._prover.verify_locally(bundle)


@dataclass
class LocalBridge:
    registry: ApprovalRegistry
    gate: MintGate
    relayer: RelayerService

    @classmethod
    def create(
        cls,
        roles: Mapping[Role, str],
        prover: ProofService,
        witnesses: WitnessSource,
        config: RelayerConfig,
        verifier: Optional[ProofVerifier] = None,
        state: Optional[RelayerStateStore] = None,
        base_uri: str = "",
    ) -> LocalBridge:
        registry = ApprovalRegistry(roles)
        gate = MintGate(verifier or _ProverAsVerifier(prover), base_uri=base_uri)
        relayer = RelayerService(
            feed=InProcessApprovalFeed(registry),
            mint_gate=InProcessMintGate(gate),
            prover=prover,
            witnesses=witnesses,
            config=config,
            state=state,
        )
        return cls(registry=registry, gate=gate, relayer=relayer)
