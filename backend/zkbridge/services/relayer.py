"""
Relayer Service — Approval → Proof → Mint Saga Coordinator.

Watches the permissioned ledger for FullyApproved notifications, obtains
a zero-knowledge proof that the private approvals hold for the asset id,
submits it to the public ledger's mint gate and polls until the mint is
visible.

Per-asset state machine:

    idle → notified → proving → submitting → confirming → confirmed
                         │           │            │
                         └───────────┴────────────┴──→ failed(reason)

Delivery & Recovery:
    - Notifications arrive at-least-once. A notification for an asset
      already past `idle` (or with a task in flight) is a no-op.
    - `mint_gate.is_minted` is checked before proving and again before
      every submission; AlreadyMinted counts as success.
    - On start, every asset the registry reports as aggregated but the
      mint gate does not show as minted is rescheduled. Persisted
      relayer state is advisory and never overrides the mint gate.

Different assets progress concurrently; steps for one asset are strictly
sequential. Every suspension point honours task cancellation.

Usage:
    relayer = RelayerService(feed, gate, prover, witnesses, RelayerConfig(recipient="0x…"))
    await relayer.start()
    ...
    await relayer.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from zkbridge.core.errors import (
    AlreadyMinted,
    BridgeRevertError,
    InvalidProof,
    ProofGenerationFailed,
    PublicInputMismatch,
    TransientLedgerError,
)
from zkbridge.infrastructure.zkp.witness import WitnessSource
from zkbridge.infrastructure.zkp.zkp_service import ProofService
from zkbridge.schemas.bridge import (
    FailureReason,
    RelayerHealth,
    RelayerRecord,
    RelayerStage,
)
from zkbridge.schemas.zkp import ProofBundle
from zkbridge.services.ledger_ports import ApprovalFeed, MintGatePort
from zkbridge.services.relayer_state import RelayerStateStore

logger = logging.getLogger(__name__)

# Failures that a fresh attempt with the same inputs cannot fix.
FATAL_REASONS = frozenset({
    FailureReason.INVALID_PROOF,
    FailureReason.PUBLIC_INPUT_MISMATCH,
})


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RelayerConfig:
    recipient: str
    proof_max_attempts: int = 3
    submit_max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    poll_interval: float = 2.0
    poll_timeout: float = 60.0
    resubscribe_delay: float = 1.0
    verify_before_submit: bool = True

    @classmethod
    def from_settings(cls, settings) -> RelayerConfig:
        if not settings.NFT_RECIPIENT:
            raise ValueError("NFT_RECIPIENT is not configured")
        return cls(
            recipient=settings.NFT_RECIPIENT,
            proof_max_attempts=settings.PROOF_MAX_ATTEMPTS,
            submit_max_attempts=settings.SUBMIT_MAX_ATTEMPTS,
            retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            poll_interval=settings.MINT_POLL_INTERVAL_SECONDS,
            poll_timeout=settings.MINT_POLL_TIMEOUT_SECONDS,
        )


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff for the given 1-based attempt, capped."""
    return min(cap, base * (2 ** max(attempt - 1, 0)))


# ═══════════════════════════════════════════════════════════════════════════════
# RELAYER
# ═══════════════════════════════════════════════════════════════════════════════

class RelayerService:
    def __init__(
        self,
        feed: ApprovalFeed,
        mint_gate: MintGatePort,
        prover: ProofService,
        witnesses: WitnessSource,
        config: RelayerConfig,
        state: Optional[RelayerStateStore] = None,
    ) -> None:
        self._feed = feed
        self._gate = mint_gate
        self._prover = prover
        self._witnesses = witnesses
        self._config = config
        self._state = state or RelayerStateStore()
        self._tasks: Dict[int, asyncio.Task] = {}
        self._feed_task: Optional[asyncio.Task] = None
        self._feed_connected = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> RelayerStateStore:
        return self._state

    # ── Lifecycle ──

    async def start(self) -> None:
        """Restore state, reschedule unfinished work, then subscribe."""
        if self._running:
            return
        self._running = True
        self._state.load()
        try:
            await self.recover()
        except TransientLedgerError as exc:
            # The feed replays from the persisted cursor, which covers most of it
            logger.warning(f"[RELAYER] Recovery scan failed, relying on feed replay: {exc}")
        self._feed_task = asyncio.create_task(self._subscription_loop())
        logger.info(
            f"[RELAYER] Started — recipient={self._config.recipient} "
            f"cursor={self._state.cursor}"
        )

    async def stop(self) -> None:
        """Cancel the subscription and every in-flight saga."""
        self._running = False
        pending = list(self._tasks.values())
        if self._feed_task:
            pending.append(self._feed_task)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._feed_task = None
        self._tasks.clear()
        logger.info(f"[RELAYER] Stopped — {len(pending)} task(s) cancelled")

    async def drain(self) -> None:
        """Wait until no saga is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ── Notification Intake ──

    def on_aggregation_complete(self, asset_id: int) -> bool:
        """
        Handle a FullyApproved notification.

        Returns:
            True if a saga was scheduled, False if the notification was a
            duplicate.
        """
        if asset_id in self._tasks:
            logger.debug(f"[RELAYER] Duplicate notification for house {asset_id} (in flight)")
            return False

        record = self._state.get(asset_id)
        if record is not None and record.stage != RelayerStage.IDLE:
            logger.debug(
                f"[RELAYER] Duplicate notification for house {asset_id} "
                f"(stage={record.stage.value})"
            )
            return False

        self._state.upsert(asset_id, stage=RelayerStage.NOTIFIED, last_error="", failure_reason=None)
        logger.info(f"[RELAYER] House {asset_id} fully approved — saga scheduled")
        self._schedule(asset_id)
        return True

    def _schedule(self, asset_id: int) -> None:
        task = asyncio.create_task(self.process(asset_id), name=f"relay-{asset_id}")
        self._tasks[asset_id] = task
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        for asset_id, current in list(self._tasks.items()):
            if current is task:
                del self._tasks[asset_id]

    async def _subscription_loop(self) -> None:
        """
        Consume the feed, reconnecting from the last cursor on failure.

        Any feed error ends only the current subscription; the loop backs
        off and resubscribes until stop() cancels it.
        """
        cfg = self._config
        failures = 0
        while self._running:
            from_cursor = max(self._state.cursor, 0)
            try:
                if not await asyncio.to_thread(self._feed.is_connected):
                    raise TransientLedgerError("permissioned ledger unreachable")
                self._feed_connected = True
                failures = 0
                async for cursor, asset_id in self._feed.events(from_cursor=from_cursor):
                    self.on_aggregation_complete(asset_id)
                    self._state.advance_cursor(cursor)
            except Exception as exc:
                failures += 1
                logger.warning(
                    f"[RELAYER] Feed lost at cursor {from_cursor} "
                    f"({type(exc).__name__}, failure {failures}): {exc}"
                )
            finally:
                self._feed_connected = False
            if self._running:
                await asyncio.sleep(backoff_delay(failures, cfg.resubscribe_delay, cfg.retry_max_delay))

    # ── Recovery ──

    async def recover(self) -> List[int]:
        """
        Re-derive unfinished work from the two ledgers.

        Reschedules every aggregated asset not yet minted, except those
        whose advisory record ends in a fatal failure. Returns the
        rescheduled asset ids.
        """
        aggregated = await asyncio.to_thread(self._feed.aggregated_assets)
        rescheduled: List[int] = []

        for asset_id in aggregated:
            if asset_id in self._tasks:
                continue
            minted = await asyncio.to_thread(self._gate.is_minted, asset_id)
            record = self._state.get(asset_id)

            if minted:
                if record is None or record.stage != RelayerStage.CONFIRMED:
                    self._state.upsert(asset_id, stage=RelayerStage.CONFIRMED, last_error="")
                continue

            if record is not None and record.failure_reason in FATAL_REASONS:
                logger.warning(
                    f"[RELAYER] House {asset_id} left failed "
                    f"({record.failure_reason.value}) — operator retry required"
                )
                continue

            if record is not None and record.stage == RelayerStage.CONFIRMED:
                logger.warning(f"[RELAYER] House {asset_id} recorded confirmed but not minted — resetting")

            self._state.upsert(asset_id, stage=RelayerStage.NOTIFIED, last_error="", failure_reason=None)
            self._schedule(asset_id)
            rescheduled.append(asset_id)

        if rescheduled:
            logger.info(f"[RELAYER] Recovery rescheduled houses {rescheduled}")
        return rescheduled

    def retry(self, asset_id: int) -> bool:
        """Operator action: restart the saga of a failed asset."""
        record = self._state.get(asset_id)
        if record is None or record.stage != RelayerStage.FAILED or asset_id in self._tasks:
            return False
        self._state.upsert(
            asset_id, stage=RelayerStage.NOTIFIED, last_error="", failure_reason=None,
            proof_attempts=0, attempts=0,
        )
        self._schedule(asset_id)
        logger.info(f"[RELAYER] House {asset_id} retry requested")
        return True

    # ── Saga ──

    async def process(self, asset_id: int) -> RelayerRecord:
        """Run the saga for `asset_id` to a terminal stage."""
        try:
            try:
                already_minted = await asyncio.to_thread(self._gate.is_minted, asset_id)
            except TransientLedgerError as exc:
                # Submission re-checks before spending a transaction
                logger.warning(f"[RELAYER] Pre-check for house {asset_id} skipped: {exc}")
                already_minted = False
            if already_minted:
                return self._confirm(asset_id, "already minted")

            bundle = await self._prove(asset_id)
            if bundle is None:
                return self._state.get(asset_id)

            tx_ref = await self._submit(asset_id, bundle)
            if tx_ref is None:
                return self._state.get(asset_id)
            if self._state.get(asset_id).stage == RelayerStage.CONFIRMED:
                return self._state.get(asset_id)

            return await self._confirm_mint(asset_id)
        except asyncio.CancelledError:
            logger.info(f"[RELAYER] House {asset_id} saga cancelled")
            raise
        except Exception as exc:
            logger.exception(f"[RELAYER] House {asset_id} saga crashed")
            return self._fail(asset_id, None, f"{type(exc).__name__}: {exc}")

    async def _prove(self, asset_id: int) -> Optional[ProofBundle]:
        cfg = self._config
        for attempt in range(1, cfg.proof_max_attempts + 1):
            self._state.upsert(asset_id, stage=RelayerStage.PROVING, proof_attempts=attempt)
            try:
                witness = self._witnesses.witness_for(asset_id)
                bundle = await asyncio.to_thread(self._prover.prove, witness)
            except ProofGenerationFailed as exc:
                self._state.upsert(asset_id, last_error=str(exc))
                if attempt >= cfg.proof_max_attempts:
                    self._fail(asset_id, FailureReason.PROOF_GENERATION_FAILED, str(exc))
                    return None
                delay = backoff_delay(attempt, cfg.retry_base_delay, cfg.retry_max_delay)
                logger.warning(
                    f"[RELAYER] Proof for house {asset_id} failed "
                    f"(attempt {attempt}/{cfg.proof_max_attempts}), retrying in {delay:.1f}s: {exc}"
                )
                await asyncio.sleep(delay)
                continue

            if cfg.verify_before_submit:
                valid = await asyncio.to_thread(self._prover.verify_locally, bundle)
                if not valid:
                    self._fail(asset_id, FailureReason.INVALID_PROOF, "proof failed local verification")
                    return None

            self._state.upsert(asset_id, proof_fingerprint=bundle.fingerprint(), last_error="")
            logger.info(f"[RELAYER] Proof ready for house {asset_id} — public={bundle.public_signals}")
            return bundle
        return None

    async def _submit(self, asset_id: int, bundle: ProofBundle) -> Optional[str]:
        cfg = self._config
        for attempt in range(1, cfg.submit_max_attempts + 1):
            self._state.upsert(asset_id, stage=RelayerStage.SUBMITTING, attempts=attempt)
            try:
                if await asyncio.to_thread(self._gate.is_minted, asset_id):
                    self._confirm(asset_id, "minted by another submission")
                    return "already-minted"
                tx_ref = await asyncio.to_thread(
                    self._gate.mint_with_proof, asset_id, bundle, cfg.recipient,
                )
            except AlreadyMinted:
                self._confirm(asset_id, "AlreadyMinted")
                return "already-minted"
            except PublicInputMismatch as exc:
                self._fail(asset_id, FailureReason.PUBLIC_INPUT_MISMATCH, exc.reason)
                return None
            except InvalidProof as exc:
                self._fail(asset_id, FailureReason.INVALID_PROOF, exc.reason)
                return None
            except BridgeRevertError as exc:
                # A status-0 receipt carries no reason; losing a mint race looks the same
                if await self._minted_after_revert(asset_id):
                    self._confirm(asset_id, f"minted by another submission ({exc.reason})")
                    return "already-minted"
                self._fail(asset_id, FailureReason.SUBMISSION_FAILED, exc.reason)
                return None
            except TransientLedgerError as exc:
                self._state.upsert(asset_id, last_error=str(exc))
                if attempt >= cfg.submit_max_attempts:
                    self._fail(asset_id, FailureReason.SUBMISSION_FAILED, str(exc))
                    return None
                delay = backoff_delay(attempt, cfg.retry_base_delay, cfg.retry_max_delay)
                logger.warning(
                    f"[RELAYER] Submission for house {asset_id} failed "
                    f"(attempt {attempt}/{cfg.submit_max_attempts}), retrying in {delay:.1f}s: {exc}"
                )
                await asyncio.sleep(delay)
                continue

            self._state.upsert(
                asset_id, stage=RelayerStage.CONFIRMING, tx_hash=tx_ref, last_error="",
            )
            logger.info(f"[RELAYER] Mint for house {asset_id} accepted — ref={tx_ref[:18]}")
            return tx_ref
        return None

    async def _minted_after_revert(self, asset_id: int) -> bool:
        try:
            return await asyncio.to_thread(self._gate.is_minted, asset_id)
        except TransientLedgerError as exc:
            logger.warning(f"[RELAYER] Could not re-read mint state for house {asset_id}: {exc}")
            return False

    async def _confirm_mint(self, asset_id: int) -> RelayerRecord:
        cfg = self._config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.poll_timeout
        while True:
            try:
                if await asyncio.to_thread(self._gate.is_minted, asset_id):
                    return self._confirm(asset_id, "mint observed")
            except TransientLedgerError as exc:
                self._state.upsert(asset_id, last_error=str(exc))
                logger.warning(f"[RELAYER] Confirmation poll for house {asset_id} failed: {exc}")
            if loop.time() >= deadline:
                return self._fail(
                    asset_id,
                    FailureReason.MINT_NOT_OBSERVED,
                    f"mint not observed within {cfg.poll_timeout:.0f}s",
                )
            await asyncio.sleep(cfg.poll_interval)

    def _confirm(self, asset_id: int, note: str) -> RelayerRecord:
        record = self._state.upsert(
            asset_id, stage=RelayerStage.CONFIRMED, last_error="", failure_reason=None,
        )
        logger.info(f"[RELAYER] House {asset_id} CONFIRMED ({note})")
        return record

    def _fail(self, asset_id: int, reason: Optional[FailureReason], error: str) -> RelayerRecord:
        record = self._state.upsert(
            asset_id, stage=RelayerStage.FAILED, failure_reason=reason, last_error=error,
        )
        label = reason.value if reason else "unexpected"
        if reason == FailureReason.MINT_NOT_OBSERVED:
            logger.warning(f"[RELAYER] House {asset_id} {label}: {error} (mint may still be pending)")
        else:
            logger.error(f"[RELAYER] House {asset_id} FAILED ({label}): {error}")
        return record

    # ── Observability ──

    def get_record(self, asset_id: int) -> Optional[RelayerRecord]:
        return self._state.get(asset_id)

    def records(self) -> List[RelayerRecord]:
        return self._state.all()

    def health(self) -> RelayerHealth:
        records = self._state.all()
        return RelayerHealth(
            running=self._running,
            registry_connected=self._feed_connected and self._feed.is_connected(),
            mint_gate_connected=self._gate.is_connected(),
            in_flight=len(self._tasks),
            confirmed=sum(1 for r in records if r.stage == RelayerStage.CONFIRMED),
            failed=sum(1 for r in records if r.stage == RelayerStage.FAILED),
            last_event_index=self._state.cursor,
        )
