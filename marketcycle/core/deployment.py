"""
DeploymentCoordinator — Exactly-once market deployment per entity.

Algorithm for ``deploy_market(entity_id, is_genesis)``:
  1. Take the per-entity store lock, or fail fast with ``LockContentionError``
  2. Mark deployment status ``pending``
  3. Idempotence: if the factory already knows a market, record ``completed``
     and return it without a transaction
  4. Expiry: genesis window, or the current cycle's global expiry minus now
  5. Gas policy: padded gas limit, discounted max fee, minimal priority fee
  6. Submit through the shared retry wrapper, re-checking market existence
     before every attempt after the first. Only failures before broadcast are
     retried; a broadcast that never confirms is recorded and the next
     attempt waits on that transaction instead of sending another
  7. Read the market address from the creation event (hard failure if absent)
  8. Record ``completed`` / ``failed`` and publish the outcome event
  9. Release the lock, always
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta

import structlog

from marketcycle.config import CycleSettings
from marketcycle.connectors.abi import MARKET_CREATED_EVENT
from marketcycle.connectors.chain import BaseChainClient
from marketcycle.core.bus import MARKET_DEPLOYED, MARKET_DEPLOYMENT_FAILED, EventBus
from marketcycle.errors import (
    ContractRevertError,
    DeploymentError,
    LockContentionError,
    MarketCycleError,
    MarketEventMissingError,
    StoreUnavailableError,
    TransactionUnconfirmedError,
)
from marketcycle.models import (
    DeploymentBatchResult,
    DeploymentOutcome,
    DeploymentStatus,
    FeeData,
    MarketDeployed,
    MarketDeploymentFailed,
    TransactionReceipt,
)
from marketcycle.store.cycle_store import BaseCycleStore
from marketcycle.utils.clock import Clock, utcnow
from marketcycle.utils.resilience import call_with_retry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeploymentPolicy:
    genesis_window: timedelta = timedelta(hours=72)
    gas_limit_margin: float = 1.2
    max_fee_discount: float = 0.9
    min_priority_fee_wei: int = 1_000_000
    retry_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0

    @classmethod
    def from_settings(cls, settings: CycleSettings) -> DeploymentPolicy:
        return cls(
            genesis_window=settings.genesis_window,
            gas_limit_margin=settings.gas_limit_margin,
            max_fee_discount=settings.max_fee_discount,
            min_priority_fee_wei=settings.min_priority_fee_wei,
            retry_attempts=settings.retry_attempts,
            retry_initial_delay=settings.retry_initial_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
        )

    def apply(self, gas_estimate: int, network: FeeData) -> tuple[int, FeeData]:
        """Gas limit and fees to submit with, given the estimate and network fees."""
        gas_limit = math.ceil(gas_estimate * self.gas_limit_margin)
        priority = self.min_priority_fee_wei
        # Never below base fee + tip, or the transaction can't be included.
        max_fee = max(
            int(network.max_fee_per_gas * self.max_fee_discount),
            network.base_fee_per_gas + priority,
        )
        return gas_limit, FeeData(
            base_fee_per_gas=network.base_fee_per_gas,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
        )


class DeploymentCoordinator:
    """Serializes deployments per entity through the store lock."""

    def __init__(
        self,
        store: BaseCycleStore,
        chain: BaseChainClient,
        bus: EventBus,
        *,
        policy: DeploymentPolicy | None = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._chain = chain
        self._bus = bus
        self._policy = policy or DeploymentPolicy()
        self._clock = clock

    # ── Single deployment ────────────────────────────────────────────

    async def deploy_market(
        self, entity_id: int, is_genesis: bool = False
    ) -> DeploymentOutcome:
        """
        Deploy (or find) the market for *entity_id*.

        Raises:
            LockContentionError: another deployment for this entity is in
                flight. No status is recorded and no event is published.
            MarketCycleError: any other failure, after recording ``failed``
                and publishing ``market.deployment_failed``.
        """
        if not await self._store.acquire_deployment_lock(entity_id):
            logger.info("deployment_in_progress", entity_id=entity_id)
            raise LockContentionError(
                f"deployment already in progress for entity {entity_id}",
                entity_id=entity_id,
            )
        try:
            return await self._deploy_locked(entity_id, is_genesis)
        finally:
            try:
                await self._store.release_deployment_lock(entity_id)
            except StoreUnavailableError:
                # The lock TTL releases it.
                logger.warning("deployment_lock_release_failed", entity_id=entity_id)

    async def _deploy_locked(self, entity_id: int, is_genesis: bool) -> DeploymentOutcome:
        log = logger.bind(entity_id=entity_id, is_genesis=is_genesis)
        await self._store.set_deployment_status(entity_id, DeploymentStatus.PENDING)
        try:
            existing = await self._chain.market_exists(entity_id)
            if existing:
                await self._store.clear_deployment_tx(entity_id)
                await self._store.set_deployment_status(entity_id, DeploymentStatus.COMPLETED)
                log.info("market_already_deployed", market=existing)
                return DeploymentOutcome(
                    entity_id=entity_id, market_address=existing, reused=True
                )

            pending_tx = await self._store.get_deployment_tx(entity_id)
            if pending_tx:
                outcome = await self._resume(entity_id, pending_tx)
            else:
                outcome = await self._deploy_new(entity_id, is_genesis)
        except MarketCycleError as e:
            await self._record_failure(entity_id, e)
            raise
        except Exception as e:
            error = DeploymentError(f"deployment failed: {e}", entity_id=entity_id)
            await self._record_failure(entity_id, error)
            raise error from e

        await self._store.set_deployment_status(entity_id, DeploymentStatus.COMPLETED)
        await self._bus.publish(
            MARKET_DEPLOYED,
            MarketDeployed(
                entity_id=entity_id,
                market_address=outcome.market_address,
                timestamp=self._clock(),
                tx_hash=outcome.tx_hash,
                is_genesis=is_genesis,
            ),
            sender="deployment",
        )
        log.info("market_deployed", market=outcome.market_address, tx_hash=outcome.tx_hash)
        return outcome

    async def _deploy_new(self, entity_id: int, is_genesis: bool) -> DeploymentOutcome:
        expires_in = await self._expires_in(entity_id, is_genesis)
        estimate = await self._chain.estimate_deploy_gas(entity_id, expires_in)
        gas_limit, fees = self._policy.apply(estimate, await self._chain.get_fee_data())
        logger.info(
            "deploying_market",
            entity_id=entity_id,
            expires_in=expires_in,
            gas_estimate=estimate,
            gas_limit=gas_limit,
            max_fee_per_gas=fees.max_fee_per_gas,
        )
        try:
            return await self._submit(entity_id, expires_in, gas_limit, fees)
        except TransactionUnconfirmedError as e:
            await self._store.set_deployment_tx(entity_id, e.tx_hash)
            logger.warning("deployment_unconfirmed", entity_id=entity_id, tx_hash=e.tx_hash)
            raise

    async def _resume(self, entity_id: int, tx_hash: str) -> DeploymentOutcome:
        """Wait on an earlier broadcast; TransactionUnconfirmedError keeps it recorded."""
        logger.info("deployment_resumed", entity_id=entity_id, tx_hash=tx_hash)
        receipt = await self._chain.wait_for_receipt(tx_hash)
        await self._store.clear_deployment_tx(entity_id)
        return DeploymentOutcome(
            entity_id=entity_id,
            market_address=self._market_from_receipt(entity_id, receipt),
            tx_hash=receipt.tx_hash,
        )

    async def _expires_in(self, entity_id: int, is_genesis: bool) -> int:
        if is_genesis:
            return int(self._policy.genesis_window.total_seconds())

        cycle_id = await self._store.get_current_cycle_id()
        cycle = await self._store.get_cycle(cycle_id) if cycle_id else None
        if cycle is None:
            raise DeploymentError(
                "no current cycle to derive market expiry from", entity_id=entity_id
            )
        expires_in = int((cycle.global_expiry - self._clock()).total_seconds())
        if expires_in <= 0:
            raise DeploymentError(
                f"cycle {cycle.id} already past its global expiry", entity_id=entity_id
            )
        return expires_in

    async def _submit(
        self, entity_id: int, expires_in: int, gas_limit: int, fees: FeeData
    ) -> DeploymentOutcome:
        attempts = 0

        async def attempt() -> TransactionReceipt | str:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                # A broadcast that errored may still have reached the network.
                existing = await self._chain.market_exists(entity_id)
                if existing:
                    return existing
            return await self._chain.deploy_market(
                entity_id, expires_in, gas_limit=gas_limit, fees=fees
            )

        result = await call_with_retry(
            attempt,
            operation="deploy_market",
            attempts=self._policy.retry_attempts,
            initial_delay=self._policy.retry_initial_delay,
            max_delay=self._policy.retry_max_delay,
        )
        if isinstance(result, str):
            logger.info("market_found_on_retry", entity_id=entity_id, market=result)
            return DeploymentOutcome(entity_id=entity_id, market_address=result)

        return DeploymentOutcome(
            entity_id=entity_id,
            market_address=self._market_from_receipt(entity_id, result),
            tx_hash=result.tx_hash,
        )

    @staticmethod
    def _market_from_receipt(entity_id: int, receipt: TransactionReceipt) -> str:
        if receipt.status != 1:
            raise ContractRevertError(
                f"deployment transaction for entity {entity_id} reverted",
                tx_hash=receipt.tx_hash,
            )
        event = receipt.find_event(MARKET_CREATED_EVENT)
        market = event.args.get("marketAddy") if event else None
        if not market:
            raise MarketEventMissingError(
                f"receipt has no {MARKET_CREATED_EVENT} event",
                entity_id=entity_id,
                tx_hash=receipt.tx_hash,
            )
        return str(market)

    async def _record_failure(self, entity_id: int, error: MarketCycleError) -> None:
        logger.error(
            "market_deployment_failed",
            entity_id=entity_id,
            error=str(error),
            error_code=error.error_code,
        )
        try:
            await self._store.set_deployment_status(entity_id, DeploymentStatus.FAILED)
        except StoreUnavailableError:
            logger.warning("deployment_status_not_recorded", entity_id=entity_id)
        await self._bus.publish(
            MARKET_DEPLOYMENT_FAILED,
            MarketDeploymentFailed(
                entity_id=entity_id,
                reason=str(error),
                error_code=error.error_code,
                timestamp=self._clock(),
            ),
            sender="deployment",
        )

    # ── Batch ────────────────────────────────────────────────────────

    async def deploy_missing_markets(
        self, entity_ids: list[int], is_genesis: bool = False
    ) -> DeploymentBatchResult:
        """
        Deploy sequentially; one entity's failure never aborts the batch.

        Entities under lock contention are reported as skipped. A store
        outage propagates, since every remaining entity would fail the same way.
        """
        result = DeploymentBatchResult()
        for entity_id in dict.fromkeys(entity_ids):
            try:
                result.deployed.append(await self.deploy_market(entity_id, is_genesis))
            except LockContentionError:
                result.skipped.append(entity_id)
            except StoreUnavailableError:
                raise
            except MarketCycleError as e:
                result.failed[entity_id] = str(e)

        logger.info(
            "deployment_batch_completed",
            deployed=len(result.deployed),
            failed=len(result.failed),
            skipped=len(result.skipped),
        )
        return result
