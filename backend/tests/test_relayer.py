import asyncio

import pytest

from conftest import (
    AGENT,
    BANK,
    RECIPIENT,
    BrokenFeed,
    FakeProofService,
    FlakyMintGate,
    MisboundProofService,
    PendingMintGate,
    RaceLostMintGate,
    StaleReadMintGate,
    SwitchableFeed,
    approve_all,
    fake_proof_for,
    fast_config,
    make_bridge,
    wait_until,
)
from zkbridge.infrastructure.zkp.witness import StaticWitnessSource
from zkbridge.schemas.bridge import FailureReason, RelayerStage
from zkbridge.services.ledger_ports import InProcessApprovalFeed, InProcessMintGate
from zkbridge.services.relayer import RelayerService, backoff_delay
from zkbridge.services.relayer_state import RelayerStateStore


def _relayer_with_gate(bridge, gate_port, prover=None, feed=None, **config_overrides):
    return RelayerService(
        feed=feed or InProcessApprovalFeed(bridge.registry),
        mint_gate=gate_port,
        prover=prover or FakeProofService(),
        witnesses=StaticWitnessSource(),
        config=fast_config(**config_overrides),
    )


def _stage(relayer, asset_id):
    record = relayer.get_record(asset_id)
    return record.stage if record is not None else None


# ═══════════════════════════════════════════════════════════════════════════════
# HAPPY PATH & DEDUPLICATION
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_full_approval_mints_token():
    prover = FakeProofService()
    bridge = make_bridge(prover=prover)
    await bridge.relayer.start()
    try:
        approve_all(bridge.registry, 42)
        await wait_until(lambda: _stage(bridge.relayer, 42) == RelayerStage.CONFIRMED)
    finally:
        await bridge.relayer.stop()

    assert bridge.gate.is_minted(42)
    assert bridge.gate.balance_of(RECIPIENT, 42) == 1
    record = bridge.relayer.get_record(42)
    assert record.proof_attempts == 1
    assert record.attempts == 1
    assert record.proof_fingerprint == fake_proof_for(42).fingerprint()
    assert prover.calls == 1


@pytest.mark.asyncio
async def test_partial_approval_does_not_trigger():
    prover = FakeProofService()
    bridge = make_bridge(prover=prover)
    await bridge.relayer.start()
    try:
        bridge.registry.approve_as_agent(42, caller=AGENT)
        bridge.registry.approve_as_bank(42, caller=BANK)
        await asyncio.sleep(0.05)
    finally:
        await bridge.relayer.stop()

    assert bridge.relayer.get_record(42) is None
    assert prover.calls == 0
    assert not bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_duplicate_notifications_run_one_saga():
    prover = FakeProofService()
    bridge = make_bridge(prover=prover)
    approve_all(bridge.registry, 42)

    assert bridge.relayer.on_aggregation_complete(42) is True
    assert bridge.relayer.on_aggregation_complete(42) is False
    await bridge.relayer.drain()
    assert bridge.relayer.on_aggregation_complete(42) is False

    assert _stage(bridge.relayer, 42) == RelayerStage.CONFIRMED
    assert prover.calls == 1
    assert bridge.gate.total_minted == 1


@pytest.mark.asyncio
async def test_concurrent_assets_each_minted_once():
    bridge = make_bridge()
    await bridge.relayer.start()
    try:
        for asset_id in (1, 2, 3):
            approve_all(bridge.registry, asset_id)
        await wait_until(
            lambda: all(_stage(bridge.relayer, a) == RelayerStage.CONFIRMED for a in (1, 2, 3))
        )
    finally:
        await bridge.relayer.stop()

    assert bridge.gate.total_minted == 3


@pytest.mark.asyncio
async def test_second_relayer_replay_does_not_reprove():
    bridge = make_bridge()
    await bridge.relayer.start()
    try:
        approve_all(bridge.registry, 42)
        await wait_until(lambda: _stage(bridge.relayer, 42) == RelayerStage.CONFIRMED)
    finally:
        await bridge.relayer.stop()

    # Fresh relayer, no persisted state, same ledgers; replays from index 0
    prover = FakeProofService()
    replica = _relayer_with_gate(bridge, bridge.relayer._gate, prover=prover)
    await replica.start()
    try:
        await asyncio.sleep(0.05)
        await replica.drain()
    finally:
        await replica.stop()

    assert prover.calls == 0
    assert _stage(replica, 42) == RelayerStage.CONFIRMED
    assert bridge.gate.total_minted == 1


@pytest.mark.asyncio
async def test_already_minted_revert_counts_as_success():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    bridge.gate.mint_with_proof(42, fake_proof_for(42), RECIPIENT)

    relayer = _relayer_with_gate(bridge, StaleReadMintGate(bridge.gate, stale_reads=2))
    record = await relayer.process(42)

    assert record.stage == RelayerStage.CONFIRMED
    assert record.failure_reason is None
    assert bridge.gate.total_minted == 1


# ═══════════════════════════════════════════════════════════════════════════════
# FAILURE PATHS
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_locally_rejected_proof_is_never_submitted():
    bridge = make_bridge(prover=FakeProofService(tamper=True))
    approve_all(bridge.registry, 42)

    record = await bridge.relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.INVALID_PROOF
    assert record.attempts == 0
    assert not bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_gate_rejected_proof_fails_without_retry():
    bridge = make_bridge(prover=FakeProofService(tamper=True), verify_before_submit=False)
    approve_all(bridge.registry, 42)

    record = await bridge.relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.INVALID_PROOF
    assert record.attempts == 1
    assert not bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_misbound_proof_fails_public_input_mismatch():
    bridge = make_bridge(prover=MisboundProofService(), verify_before_submit=False)
    approve_all(bridge.registry, 42)

    record = await bridge.relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.PUBLIC_INPUT_MISMATCH
    assert record.attempts == 1
    assert not bridge.gate.is_minted(42)
    assert not bridge.gate.is_minted(43)


@pytest.mark.asyncio
async def test_proof_generation_retried_then_succeeds():
    prover = FakeProofService(fail_times=2)
    bridge = make_bridge(prover=prover)
    approve_all(bridge.registry, 42)

    record = await bridge.relayer.process(42)

    assert record.stage == RelayerStage.CONFIRMED
    assert record.proof_attempts == 3
    assert prover.calls == 3


@pytest.mark.asyncio
async def test_proof_generation_exhausted():
    prover = FakeProofService(fail_times=10)
    bridge = make_bridge(prover=prover, proof_max_attempts=2)
    approve_all(bridge.registry, 42)

    record = await bridge.relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.PROOF_GENERATION_FAILED
    assert "prover unavailable" in record.last_error
    assert prover.calls == 2
    assert not bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_transient_submission_errors_retried():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    flaky = FlakyMintGate(bridge.gate, fail_submits=2)
    relayer = _relayer_with_gate(bridge, flaky)

    record = await relayer.process(42)

    assert record.stage == RelayerStage.CONFIRMED
    assert record.attempts == 3
    assert flaky.submissions == 3
    assert bridge.gate.total_minted == 1


@pytest.mark.asyncio
async def test_transient_submission_errors_exhausted():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    relayer = _relayer_with_gate(bridge, FlakyMintGate(bridge.gate, fail_submits=10))

    record = await relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.SUBMISSION_FAILED
    assert "connection reset" in record.last_error


@pytest.mark.asyncio
async def test_mint_not_observed_within_timeout():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    relayer = _relayer_with_gate(bridge, PendingMintGate(bridge.gate), poll_timeout=0.05)

    record = await relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.MINT_NOT_OBSERVED
    assert record.tx_hash == "0x" + "ab" * 32


@pytest.mark.asyncio
async def test_operator_retry_restarts_failed_saga():
    prover = FakeProofService(fail_times=2)
    bridge = make_bridge(prover=prover, proof_max_attempts=1)
    approve_all(bridge.registry, 42)

    assert bridge.relayer.on_aggregation_complete(42)
    await bridge.relayer.drain()
    assert _stage(bridge.relayer, 42) == RelayerStage.FAILED
    assert bridge.relayer.retry(42)
    await bridge.relayer.drain()
    assert _stage(bridge.relayer, 42) == RelayerStage.FAILED
    assert bridge.relayer.retry(42)
    await bridge.relayer.drain()

    assert _stage(bridge.relayer, 42) == RelayerStage.CONFIRMED
    assert bridge.relayer.retry(42) is False
    assert bridge.relayer.retry(99) is False


# ═══════════════════════════════════════════════════════════════════════════════
# RECOVERY & CONNECTIVITY
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_restart_resumes_interrupted_saga(tmp_path):
    state_path = str(tmp_path / "relayer-state.json")
    bridge = make_bridge(state=RelayerStateStore(state_path))
    approve_all(bridge.registry, 42)
    # Simulated crash mid-submission
    bridge.relayer.state.upsert(42, stage=RelayerStage.SUBMITTING, attempts=1)
    bridge.relayer.state.advance_cursor(10)

    prover = FakeProofService()
    restarted = RelayerService(
        feed=InProcessApprovalFeed(bridge.registry),
        mint_gate=bridge.relayer._gate,
        prover=prover,
        witnesses=StaticWitnessSource(),
        config=fast_config(),
        state=RelayerStateStore(state_path),
    )
    await restarted.start()
    try:
        await wait_until(lambda: _stage(restarted, 42) == RelayerStage.CONFIRMED)
    finally:
        await restarted.stop()

    assert prover.calls == 1
    assert bridge.gate.total_minted == 1
    assert restarted.state.cursor == 10


@pytest.mark.asyncio
async def test_recovery_resets_confirmed_record_that_was_not_minted(tmp_path):
    state_path = str(tmp_path / "relayer-state.json")
    bridge = make_bridge(state=RelayerStateStore(state_path))
    approve_all(bridge.registry, 42)
    bridge.relayer.state.upsert(42, stage=RelayerStage.CONFIRMED)

    rescheduled = await bridge.relayer.recover()
    await bridge.relayer.drain()

    assert rescheduled == [42]
    assert bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_recovery_skips_fatal_failures():
    prover = FakeProofService()
    bridge = make_bridge(prover=prover)
    approve_all(bridge.registry, 42)
    bridge.relayer.state.upsert(
        42, stage=RelayerStage.FAILED, failure_reason=FailureReason.INVALID_PROOF,
    )

    assert await bridge.relayer.recover() == []
    assert prover.calls == 0


@pytest.mark.asyncio
async def test_feed_reconnects_after_disconnect():
    bridge = make_bridge()
    await bridge.relayer.start()
    try:
        approve_all(bridge.registry, 1)
        await wait_until(lambda: _stage(bridge.relayer, 1) == RelayerStage.CONFIRMED)

        bridge.registry.events.disconnect_all()
        approve_all(bridge.registry, 2)
        await wait_until(lambda: _stage(bridge.relayer, 2) == RelayerStage.CONFIRMED)
    finally:
        await bridge.relayer.stop()

    assert bridge.gate.total_minted == 2


@pytest.mark.asyncio
async def test_health_reports_counts_and_connectivity():
    bridge = make_bridge(prover=FakeProofService(tamper=True))
    await bridge.relayer.start()
    try:
        await wait_until(lambda: bridge.relayer.health().registry_connected)
        approve_all(bridge.registry, 7)
        await wait_until(lambda: _stage(bridge.relayer, 7) == RelayerStage.FAILED)
        await bridge.relayer.drain()
        health = bridge.relayer.health()
    finally:
        await bridge.relayer.stop()

    assert health.running
    assert health.mint_gate_connected
    assert health.failed == 1
    assert health.confirmed == 0
    assert health.in_flight == 0
    assert health.last_event_index >= 0
    assert not bridge.relayer.health().running


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_saga():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    relayer = _relayer_with_gate(bridge, PendingMintGate(bridge.gate), poll_timeout=30.0)
    await relayer.start()

    await wait_until(lambda: _stage(relayer, 42) == RelayerStage.CONFIRMING)
    await relayer.stop()

    assert relayer.health().in_flight == 0
    assert _stage(relayer, 42) == RelayerStage.CONFIRMING


@pytest.mark.asyncio
async def test_feed_resubscribes_after_unexpected_error():
    bridge = make_bridge()
    feed = BrokenFeed(bridge.registry, failures=2)
    relayer = _relayer_with_gate(bridge, InProcessMintGate(bridge.gate), feed=feed)
    await relayer.start()
    try:
        approve_all(bridge.registry, 42)
        await wait_until(lambda: _stage(relayer, 42) == RelayerStage.CONFIRMED)
        health = relayer.health()
    finally:
        await relayer.stop()

    assert feed.failures == 0
    assert health.running
    assert bridge.gate.is_minted(42)


@pytest.mark.asyncio
async def test_registry_reported_disconnected_until_reachable():
    bridge = make_bridge()
    feed = SwitchableFeed(bridge.registry)
    relayer = _relayer_with_gate(bridge, InProcessMintGate(bridge.gate), feed=feed)
    await relayer.start()
    try:
        approve_all(bridge.registry, 42)
        await asyncio.sleep(0.05)
        assert not relayer.health().registry_connected
        assert relayer.get_record(42) is None

        feed.connected = True
        await wait_until(lambda: _stage(relayer, 42) == RelayerStage.CONFIRMED)
        await wait_until(lambda: relayer.health().registry_connected)
    finally:
        await relayer.stop()


@pytest.mark.asyncio
async def test_reasonless_revert_after_lost_race_confirms():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    relayer = _relayer_with_gate(bridge, RaceLostMintGate(bridge.gate, minted_elsewhere=True))

    record = await relayer.process(42)

    assert record.stage == RelayerStage.CONFIRMED
    assert record.failure_reason is None
    assert bridge.gate.total_minted == 1


@pytest.mark.asyncio
async def test_reasonless_revert_without_mint_fails_submission():
    bridge = make_bridge()
    approve_all(bridge.registry, 42)
    relayer = _relayer_with_gate(bridge, RaceLostMintGate(bridge.gate, minted_elsewhere=False))

    record = await relayer.process(42)

    assert record.stage == RelayerStage.FAILED
    assert record.failure_reason == FailureReason.SUBMISSION_FAILED
    assert record.attempts == 1
    assert not bridge.gate.is_minted(42)


def test_backoff_is_exponential_and_capped():
    assert [backoff_delay(n, 1.0, 5.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
