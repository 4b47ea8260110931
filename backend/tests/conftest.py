import asyncio
import hashlib
from typing import Callable

import pytest

from zkbridge.core.errors import BridgeRevertError, ProofGenerationFailed, TransientLedgerError
from zkbridge.infrastructure.zkp.witness import StaticWitnessSource, WitnessSource
from zkbridge.infrastructure.zkp.zkp_service import ProofService
from zkbridge.integration.bridge import LocalBridge
from zkbridge.schemas.bridge import Role
from zkbridge.schemas.zkp import Proof, ProofBundle, WitnessBundle
from zkbridge.services.ledger_ports import InProcessApprovalFeed, InProcessMintGate
from zkbridge.services.relayer import RelayerConfig

AGENT = "0xed9d02e382b34818e88b88a309c7fe71e65f419d"
BANK = "0xb30f304642de3fee4365ed5cd06ea2e69d3fd0ca"
HOUSING = "0x0886328869e4e1f401e1052a5f4aae8b45f42610"
RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

ROLES = {Role.AGENT: AGENT, Role.BANK: BANK, Role.HOUSING_DEPT: HOUSING}


# ═══════════════════════════════════════════════════════════════════════════════
# FAKE PROVING CAPABILITY
# ═══════════════════════════════════════════════════════════════════════════════

def _field(tag: str, asset_id: str) -> str:
    digest = hashlib.sha256(f"{tag}:{asset_id}".encode()).hexdigest()
    return str(int(digest, 16))


def fake_proof_for(asset_id: int) -> ProofBundle:
    """The only proof the fake verifier accepts for `asset_id`."""
    a = str(asset_id)
    return ProofBundle(
        proof=Proof(
            pi_a=[_field("a0", a), _field("a1", a), "1"],
            pi_b=[[_field("b00", a), _field("b01", a)], [_field("b10", a), _field("b11", a)], ["1", "0"]],
            pi_c=[_field("c0", a), _field("c1", a), "1"],
        ),
        public_signals=[a],
    )


def fake_verify(bundle: ProofBundle) -> bool:
    asset_id = bundle.public_asset_id()
    if asset_id is None:
        return False
    return bundle.proof == fake_proof_for(asset_id).proof


class FakeProofService(ProofService):
    """Deterministic prover; fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0, tamper: bool = False):
        self.fail_times = fail_times
        self.tamper = tamper
        self.calls = 0

    def prove(self, witness: WitnessBundle) -> ProofBundle:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProofGenerationFailed("prover unavailable")
        if not (witness.agent_approved and witness.bank_approved):
            raise ProofGenerationFailed("Assert Failed: approvals not satisfied")
        bundle = fake_proof_for(witness.asset_id)
        if self.tamper:
            bundle.proof.pi_c[0] = "7"
        return bundle

    def verify_locally(self, bundle: ProofBundle) -> bool:
        return fake_verify(bundle)


class FakeVerifier:
    def verify(self, bundle: ProofBundle) -> bool:
        return fake_verify(bundle)


class MisboundProofService(FakeProofService):
    """Returns a valid proof for a different asset id."""

    def prove(self, witness: WitnessBundle) -> ProofBundle:
        self.calls += 1
        return fake_proof_for(witness.asset_id + 1)


# ═══════════════════════════════════════════════════════════════════════════════
# MINT GATE PORT WRAPPERS
# ═══════════════════════════════════════════════════════════════════════════════

class FlakyMintGate(InProcessMintGate):
    """Raises TransientLedgerError on the first `fail_submits` submissions."""

    def __init__(self, gate, fail_submits: int = 0):
        super().__init__(gate)
        self.fail_submits = fail_submits
        self.submissions = 0

    def mint_with_proof(self, asset_id, bundle, recipient):
        self.submissions += 1
        if self.fail_submits > 0:
            self.fail_submits -= 1
            raise TransientLedgerError("connection reset by peer")
        return super().mint_with_proof(asset_id, bundle, recipient)


class StaleReadMintGate(InProcessMintGate):
    """Reports not-minted for the first `stale_reads` reads."""

    def __init__(self, gate, stale_reads: int):
        super().__init__(gate)
        self.stale_reads = stale_reads

    def is_minted(self, asset_id):
        if self.stale_reads > 0:
            self.stale_reads -= 1
            return False
        return super().is_minted(asset_id)


class PendingMintGate(InProcessMintGate):
    """Accepts submissions that never become visible."""

    def is_minted(self, asset_id):
        return False

    def mint_with_proof(self, asset_id, bundle, recipient):
        return "0x" + "ab" * 32


class RaceLostMintGate(InProcessMintGate):
    """
    Submission reverts without a reason. With `minted_elsewhere` the token
    is minted first, as when another relayer wins the race.
    """

    def __init__(self, gate, minted_elsewhere: bool):
        super().__init__(gate)
        self.minted_elsewhere = minted_elsewhere

    def mint_with_proof(self, asset_id, bundle, recipient):
        if self.minted_elsewhere:
            super().mint_with_proof(asset_id, bundle, recipient)
        raise BridgeRevertError("Transaction reverted on-chain")


# ═══════════════════════════════════════════════════════════════════════════════
# APPROVAL FEED WRAPPERS
# ═══════════════════════════════════════════════════════════════════════════════

class BrokenFeed(InProcessApprovalFeed):
    """Fails the first `failures` subscriptions with an unexpected error."""

    def __init__(self, registry, failures: int = 1):
        super().__init__(registry)
        self.failures = failures

    async def events(self, from_cursor: int = 0):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("unexpected node response")
        async for item in super().events(from_cursor):
            yield item


class SwitchableFeed(InProcessApprovalFeed):
    """Reports the ledger unreachable until `connected` is set."""

    def __init__(self, registry):
        super().__init__(registry)
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

def fast_config(**overrides) -> RelayerConfig:
    params = dict(
        recipient=RECIPIENT,
        proof_max_attempts=3,
        submit_max_attempts=3,
        retry_base_delay=0.001,
        retry_max_delay=0.01,
        poll_interval=0.005,
        poll_timeout=0.2,
        resubscribe_delay=0.005,
    )
    params.update(overrides)
    return RelayerConfig(**params)


def make_bridge(
    prover: ProofService = None,
    witnesses: WitnessSource = None,
    state=None,
    **config_overrides,
) -> LocalBridge:
    return LocalBridge.create(
        ROLES,
        prover or FakeProofService(),
        witnesses or StaticWitnessSource(),
        fast_config(**config_overrides),
        verifier=FakeVerifier(),
        state=state,
    )


def approve_all(registry, asset_id: int) -> None:
    registry.approve_as_agent(asset_id, caller=AGENT)
    registry.approve_as_bank(asset_id, caller=BANK)
    registry.approve_as_housing_dept(asset_id, caller=HOUSING)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def bridge() -> LocalBridge:
    return make_bridge()
