"""
Tests for marketcycle.core.deployment — exactly-once market deployment.

Covers:
  - Gas policy (padded limit, discounted max fee, minimal tip)
  - Expiry derivation (genesis window vs. current cycle expiry)
  - Idempotence against the factory and across retries
  - Per-entity lock: concurrent callers submit exactly one transaction
  - Status records and published outcome events
  - Batch deployment: isolation, skips, store outage
"""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from fakes import market_for, ranked
from marketcycle.core.bus import MARKET_DEPLOYED, MARKET_DEPLOYMENT_FAILED
from marketcycle.core.deployment import DeploymentCoordinator, DeploymentPolicy
from marketcycle.errors import (
    ContractRevertError,
    DeploymentError,
    LockContentionError,
    MarketEventMissingError,
    StoreUnavailableError,
    TransactionUnconfirmedError,
    TransientNetworkError,
)
from marketcycle.models import CycleStatus, DeploymentStatus, FeeData, MarketCycle


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Gas policy
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDeploymentPolicy:
    def test_pads_gas_and_discounts_fee(self):
        policy = DeploymentPolicy(gas_limit_margin=1.2, max_fee_discount=0.9, min_priority_fee_wei=5)
        network = FeeData(base_fee_per_gas=100, max_fee_per_gas=1000, max_priority_fee_per_gas=50)

        gas_limit, fees = policy.apply(100_001, network)

        assert gas_limit == 120_002  # ceil(100_001 * 1.2)
        assert fees.max_fee_per_gas == 900
        assert fees.max_priority_fee_per_gas == 5

    def test_max_fee_never_below_base_plus_tip(self):
        policy = DeploymentPolicy(max_fee_discount=0.5, min_priority_fee_wei=10)
        network = FeeData(base_fee_per_gas=100, max_fee_per_gas=150, max_priority_fee_per_gas=10)

        _, fees = policy.apply(1, network)

        assert fees.max_fee_per_gas == 110


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Single deployment
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


async def _put_cycle(store, clock, hours_left=10):
    now = clock()
    cycle = MarketCycle(
        id="cycle-1",
        start_time=now - timedelta(hours=1),
        end_time=now + timedelta(hours=hours_left),
        global_expiry=now + timedelta(hours=hours_left),
        active_entities=[ranked(1)],
    )
    await store.put_cycle(cycle)
    await store.set_current_cycle_id(cycle.id)
    await store.set_cycle_status(cycle.id, CycleStatus.ACTIVE)
    return cycle


class TestDeployMarket:
    @pytest.mark.asyncio
    async def test_genesis_deployment(self, coordinator, chain, store, bus):
        deployed = AsyncMock()
        bus.subscribe(MARKET_DEPLOYED, deployed)

        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert outcome.market_address == market_for(1)
        assert outcome.reused is False
        assert outcome.tx_hash
        entity_id, expires_in, gas_limit, fees = chain.deploy_calls[0]
        assert (entity_id, expires_in, gas_limit) == (1, 72 * 3600, 120_000)
        assert fees.max_fee_per_gas == 27_000_000
        assert fees.max_priority_fee_per_gas == 1_000_000
        assert await store.get_deployment_status(1) == DeploymentStatus.COMPLETED
        assert deployed.await_args.args[0].payload["is_genesis"] is True

    @pytest.mark.asyncio
    async def test_expiry_follows_current_cycle(self, coordinator, chain, store, clock):
        await _put_cycle(store, clock, hours_left=10)

        await coordinator.deploy_market(1)

        assert chain.deploy_calls[0][1] == 10 * 3600

    @pytest.mark.asyncio
    async def test_no_cycle_for_regular_deployment_fails(self, coordinator, chain, store, bus):
        failed = AsyncMock()
        bus.subscribe(MARKET_DEPLOYMENT_FAILED, failed)

        with pytest.raises(DeploymentError):
            await coordinator.deploy_market(1)

        assert chain.deploy_calls == []
        assert await store.get_deployment_status(1) == DeploymentStatus.FAILED
        failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_market_is_reused_without_transaction(self, coordinator, chain, store):
        chain.markets[1] = "0xexisting"

        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert outcome.market_address == "0xexisting"
        assert outcome.reused is True
        assert chain.deploy_calls == []
        assert await store.get_deployment_status(1) == DeploymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_creation_event_is_hard_failure(self, coordinator, chain, store, bus):
        chain.emit_event = False
        failed = AsyncMock()
        bus.subscribe(MARKET_DEPLOYMENT_FAILED, failed)

        with pytest.raises(MarketEventMissingError):
            await coordinator.deploy_market(1, is_genesis=True)

        assert await store.get_deployment_status(1) == DeploymentStatus.FAILED
        assert failed.await_args.args[0].payload["error_code"] == "MARKET_EVENT_MISSING"

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, coordinator, chain):
        chain.receipt_status = 0

        with pytest.raises(ContractRevertError):
            await coordinator.deploy_market(1, is_genesis=True)

    @pytest.mark.asyncio
    async def test_broadcast_that_landed_is_not_redeployed(self, coordinator, chain):
        chain.deploy_errors = [TransientNetworkError("connection reset during broadcast")]
        chain.record_on_error = True

        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert outcome.market_address == market_for(1)
        assert len(chain.deploy_calls) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, coordinator, chain):
        chain.deploy_errors = [TransientNetworkError("rpc blip")]

        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert outcome.market_address == market_for(1)
        assert len(chain.deploy_calls) == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, coordinator, chain, store):
        chain.deploy_errors = [TransientNetworkError("down")] * 3

        with pytest.raises(TransientNetworkError):
            await coordinator.deploy_market(1, is_genesis=True)

        assert len(chain.deploy_calls) == 3
        assert await store.get_deployment_status(1) == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_unconfirmed_deployment_is_not_resubmitted(self, coordinator, chain, store, bus):
        failed = AsyncMock()
        bus.subscribe(MARKET_DEPLOYMENT_FAILED, failed)
        chain.unconfirmed = True

        with pytest.raises(TransactionUnconfirmedError):
            await coordinator.deploy_market(1, is_genesis=True)

        assert len(chain.deploy_calls) == 1
        assert await store.get_deployment_tx(1) == "0xtx1-1"
        assert await store.get_deployment_status(1) == DeploymentStatus.FAILED
        failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_next_attempt_waits_on_unconfirmed_transaction(self, coordinator, chain, store):
        chain.unconfirmed = True
        with pytest.raises(TransactionUnconfirmedError):
            await coordinator.deploy_market(1, is_genesis=True)

        chain.unconfirmed = False
        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert len(chain.deploy_calls) == 1
        assert chain.receipt_waits == ["0xtx1-1"]
        assert outcome.market_address == market_for(1)
        assert outcome.tx_hash == "0xtx1-1"
        assert await store.get_deployment_tx(1) is None

    @pytest.mark.asyncio
    async def test_still_unconfirmed_transaction_stays_recorded(self, coordinator, chain, store):
        chain.unconfirmed = True
        for _ in range(2):
            with pytest.raises(TransactionUnconfirmedError):
                await coordinator.deploy_market(1, is_genesis=True)

        assert len(chain.deploy_calls) == 1
        assert chain.receipt_waits == ["0xtx1-1"]
        assert await store.get_deployment_tx(1) == "0xtx1-1"

    @pytest.mark.asyncio
    async def test_unconfirmed_transaction_mined_meanwhile_is_reused(
        self, coordinator, chain, store
    ):
        chain.unconfirmed = True
        with pytest.raises(TransactionUnconfirmedError):
            await coordinator.deploy_market(1, is_genesis=True)
        chain.markets[1] = market_for(1)

        outcome = await coordinator.deploy_market(1, is_genesis=True)

        assert outcome.reused is True
        assert chain.receipt_waits == []
        assert await store.get_deployment_tx(1) is None

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, coordinator, chain, store):
        chain.receipt_status = 0
        with pytest.raises(ContractRevertError):
            await coordinator.deploy_market(1, is_genesis=True)

        assert await store.acquire_deployment_lock(1) is True

    @pytest.mark.asyncio
    async def test_lock_contention_records_nothing(self, coordinator, chain, store, bus):
        failed = AsyncMock()
        bus.subscribe("market.*", failed)
        await store.acquire_deployment_lock(1)

        with pytest.raises(LockContentionError):
            await coordinator.deploy_market(1, is_genesis=True)

        assert chain.deploy_calls == []
        assert await store.get_deployment_status(1) is None
        failed.assert_not_awaited()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_deploys_submit_one_transaction(
        self, store, chain, bus, policy, clock
    ):
        chain.deploy_delay = 0.05
        first = DeploymentCoordinator(store, chain, bus, policy=policy, clock=clock)
        second = DeploymentCoordinator(store, chain, bus, policy=policy, clock=clock)

        results = await asyncio.gather(
            first.deploy_market(1, is_genesis=True),
            second.deploy_market(1, is_genesis=True),
            return_exceptions=True,
        )

        assert len(chain.deploy_calls) == 1
        outcomes = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(outcomes) == 1
        assert len(errors) == 1 and isinstance(errors[0], LockContentionError)

        # Once the winner finishes, a late caller reuses the market.
        late = await second.deploy_market(1, is_genesis=True)
        assert late.reused is True
        assert late.market_address == outcomes[0].market_address
        assert len(chain.deploy_calls) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Batch deployment
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDeployMissingMarkets:
    @pytest.mark.asyncio
    async def test_failures_do_not_abort_the_batch(self, coordinator, chain, store, clock):
        await _put_cycle(store, clock)
        await store.acquire_deployment_lock(2)
        chain.deploy_errors = [ContractRevertError("bad kol")]

        result = await coordinator.deploy_missing_markets([2, 3, 4, 4])

        assert [o.entity_id for o in result.deployed] == [4]
        assert list(result.failed) == [3]
        assert result.skipped == [2]
        assert result.addresses == [market_for(4)]

    @pytest.mark.asyncio
    async def test_store_outage_propagates(self, coordinator, store):
        store.available = False

        with pytest.raises(StoreUnavailableError):
            await coordinator.deploy_missing_markets([1, 2], is_genesis=True)
