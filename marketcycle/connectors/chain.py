"""
ChainClient — Smart-contract access for market deployment and lifecycle.

The orchestrator talks to three contracts:
  - Factory: ``kolIdToMarket`` (existence) and ``initialiseMarket`` (deploy)
  - Order book (one per market): open position ids, ``closePosition``,
    ``resetMarket``
  - Oracle: ``updateCrashedOutKolData`` for entities outside the ranking

``Web3ChainClient`` drives the synchronous web3.py API from worker threads
(``asyncio.to_thread``) so RPC latency never blocks the event loop. Every
read goes through the shared retry utility; failures surface as
``TransientNetworkError`` (retried) or ``ContractRevertError`` (not retried).

Writes are split in two steps. The signed transaction is broadcast with a
nonce fixed before the first attempt, so a re-broadcast can never produce a
second transaction. Confirmation then waits on that one hash; when it never
arrives the client raises ``TransactionUnconfirmedError`` carrying the hash
instead of resubmitting.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Callable, TypeVar

import structlog
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.logs import DISCARD

from marketcycle.config import CycleSettings
from marketcycle.connectors.abi import (
    FACTORY_ABI,
    MARKET_CREATED_EVENT,
    MINDSHARE_SCALE,
    ORACLE_ABI,
    ORDER_BOOK_ABI,
    ZERO_ADDRESS,
)
from marketcycle.connectors.base import BaseConnector
from marketcycle.errors import (
    ConfigurationError,
    ContractRevertError,
    TransactionUnconfirmedError,
    TransientNetworkError,
)
from marketcycle.models import ChainEvent, FeeData, TransactionReceipt
from marketcycle.utils.resilience import call_with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def scale_mindshare(score: float) -> int:
    return int(round(score * MINDSHARE_SCALE))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BaseChainClient — Contract consumed by the coordinator and state machine
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BaseChainClient(BaseConnector):
    """Every method either returns a result or raises a typed network/contract error."""

    @property
    def name(self) -> str:
        return "chain"

    @property
    def description(self) -> str:
        return "Market factory, order books and oracle contracts"

    @abc.abstractmethod
    async def market_exists(self, entity_id: int) -> str | None:
        """Market address deployed for *entity_id*, or None."""
        ...

    @abc.abstractmethod
    async def estimate_deploy_gas(self, entity_id: int, expires_in: int) -> int: ...

    @abc.abstractmethod
    async def get_fee_data(self) -> FeeData: ...

    @abc.abstractmethod
    async def deploy_market(
        self, entity_id: int, expires_in: int, *, gas_limit: int, fees: FeeData
    ) -> TransactionReceipt:
        """Submit one deployment transaction and wait for its confirmation."""
        ...

    @abc.abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        """Wait on an already broadcast transaction. Never resubmits."""
        ...

    @abc.abstractmethod
    async def get_open_positions(self, market: str) -> list[int]: ...

    @abc.abstractmethod
    async def close_position(self, market: str, position_id: int) -> TransactionReceipt: ...

    @abc.abstractmethod
    async def reset_market(self, market: str, mindshares: list[float]) -> TransactionReceipt: ...

    @abc.abstractmethod
    async def update_crashed_out_data(
        self, entity_id: int, rank: int, mindshare_score: float
    ) -> TransactionReceipt: ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Web3ChainClient — web3.py implementation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Web3ChainClient(BaseChainClient):
    """
    Signs locally with the configured key and submits EIP-1559 transactions.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        private_key: str,
        factory_address: str,
        oracle_address: str,
        chain_id: int,
        call_timeout: float = 30.0,
        confirmation_timeout: float = 120.0,
        retry_attempts: int = 3,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        web3: Web3 | None = None,
    ):
        if not private_key:
            raise ConfigurationError("signer private key is not configured")
        if not factory_address or not oracle_address:
            raise ConfigurationError("factory and oracle addresses are required")

        self._w3 = web3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": call_timeout})
        )
        self._account = self._w3.eth.account.from_key(private_key)
        self._private_key = private_key
        self._chain_id = chain_id
        self._oracle_address = Web3.to_checksum_address(oracle_address)
        self._factory = self._w3.eth.contract(
            address=Web3.to_checksum_address(factory_address), abi=FACTORY_ABI
        )
        self._oracle = self._w3.eth.contract(address=self._oracle_address, abi=ORACLE_ABI)
        self._call_timeout = call_timeout
        self._confirmation_timeout = confirmation_timeout
        self._retry = {
            "attempts": retry_attempts,
            "initial_delay": retry_initial_delay,
            "max_delay": retry_max_delay,
        }

    @classmethod
    def from_settings(cls, settings: CycleSettings) -> Web3ChainClient:
        return cls(
            settings.rpc_url,
            private_key=settings.signer_private_key.get_secret_value(),
            factory_address=settings.factory_address,
            oracle_address=settings.oracle_address,
            chain_id=settings.chain_id,
            call_timeout=settings.call_timeout_seconds,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_initial_delay=settings.retry_initial_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
        )

    @property
    def signer_address(self) -> str:
        return self._account.address

    # ── Plumbing ─────────────────────────────────────────────────────

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking web3 call in a worker thread with typed errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ContractLogicError as e:
            raise ContractRevertError(
                f"{operation} reverted: {getattr(e, 'message', None) or e}",
                detail=str(getattr(e, "data", None)),
            ) from e
        except TimeExhausted as e:
            raise TransientNetworkError(
                f"{operation} not confirmed within {self._confirmation_timeout}s",
                service=self.name,
            ) from e
        except OSError as e:
            # requests' ConnectionError and Timeout are OSError subclasses.
            raise TransientNetworkError(f"{operation} failed: {e}", service=self.name) from e

    async def _read(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await call_with_retry(
            lambda: self._run(operation, fn, *args),
            operation=operation,
            timeout=self._call_timeout,
            **self._retry,
        )

    def _order_book(self, market: str):
        return self._w3.eth.contract(
            address=Web3.to_checksum_address(market), abi=ORDER_BOOK_ABI
        )

    def _sign(self, contract_fn, tx_fields: dict[str, Any]) -> bytes:
        """Build and sign one transaction at the signer's next pending nonce (blocking)."""
        nonce = self._w3.eth.get_transaction_count(self._account.address, "pending")
        tx = contract_fn.build_transaction(
            {
                "from": self._account.address,
                "nonce": nonce,
                "chainId": self._chain_id,
                **tx_fields,
            }
        )
        signed = self._w3.eth.account.sign_transaction(tx, private_key=self._private_key)
        return signed.raw_transaction

    def _receipt(self, tx_hash: str) -> TransactionReceipt:
        """Block until *tx_hash* is mined and decode its factory events."""
        receipt = self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._confirmation_timeout
        )
        events = [
            ChainEvent(name=MARKET_CREATED_EVENT, args=dict(log["args"]))
            for log in getattr(self._factory.events, MARKET_CREATED_EVENT)().process_receipt(
                receipt, errors=DISCARD
            )
        ]
        return TransactionReceipt(
            tx_hash=tx_hash,
            status=receipt["status"],
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            events=events,
        )

    async def _submit(
        self, operation: str, contract_fn, tx_fields: dict[str, Any]
    ) -> TransactionReceipt:
        # Signed once: re-broadcasting the same raw bytes cannot create a second tx.
        raw = await self._read(operation, self._sign, contract_fn, tx_fields)
        tx_hash = await call_with_retry(
            lambda: self._run(operation, self._w3.eth.send_raw_transaction, raw),
            operation=f"{operation}.broadcast",
            timeout=self._call_timeout,
            **self._retry,
        )
        tx_hash = Web3.to_hex(tx_hash)
        logger.info("chain_tx_broadcast", operation=operation, tx_hash=tx_hash)
        return await self.wait_for_receipt(tx_hash)

    async def _write(self, operation: str, contract_fn) -> TransactionReceipt:
        receipt = await self._submit(operation, contract_fn, {})
        if receipt.status != 1:
            raise ContractRevertError(
                f"{operation} transaction failed", tx_hash=receipt.tx_hash
            )
        logger.info("chain_tx_confirmed", operation=operation, tx_hash=receipt.tx_hash)
        return receipt

    # ── Reads ────────────────────────────────────────────────────────

    async def market_exists(self, entity_id: int) -> str | None:
        address = await self._read(
            "market_exists", self._factory.functions.kolIdToMarket(entity_id).call
        )
        if not address or address == ZERO_ADDRESS:
            return None
        return Web3.to_checksum_address(address)

    async def estimate_deploy_gas(self, entity_id: int, expires_in: int) -> int:
        fn = self._factory.functions.initialiseMarket(
            entity_id, self._oracle_address, expires_in
        )
        return await self._read(
            "estimate_deploy_gas", fn.estimate_gas, {"from": self._account.address}
        )

    async def get_fee_data(self) -> FeeData:
        def _fetch() -> FeeData:
            block = self._w3.eth.get_block("latest")
            base_fee = int(block.get("baseFeePerGas") or self._w3.eth.gas_price)
            priority = int(self._w3.eth.max_priority_fee)
            return FeeData(
                base_fee_per_gas=base_fee,
                max_fee_per_gas=2 * base_fee + priority,
                max_priority_fee_per_gas=priority,
            )

        return await self._read("get_fee_data", _fetch)

    async def get_open_positions(self, market: str) -> list[int]:
        ids = await self._read(
            "get_open_positions", self._order_book(market).functions.getActiveOrderIds().call
        )
        return [int(i) for i in ids]

    # ── Writes ───────────────────────────────────────────────────────

    async def deploy_market(
        self, entity_id: int, expires_in: int, *, gas_limit: int, fees: FeeData
    ) -> TransactionReceipt:
        fn = self._factory.functions.initialiseMarket(
            entity_id, self._oracle_address, expires_in
        )
        tx_fields = {
            "gas": gas_limit,
            "maxFeePerGas": fees.max_fee_per_gas,
            "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
        }
        receipt = await self._submit("deploy_market", fn, tx_fields)
        logger.info(
            "chain_deploy_confirmed",
            entity_id=entity_id,
            tx_hash=receipt.tx_hash,
            status=receipt.status,
            gas_used=receipt.gas_used,
        )
        return receipt

    async def wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        try:
            return await call_with_retry(
                lambda: self._run("wait_for_receipt", self._receipt, tx_hash),
                operation="wait_for_receipt",
                timeout=self._call_timeout + self._confirmation_timeout,
                **self._retry,
            )
        except TransientNetworkError as e:
            logger.warning("chain_tx_unconfirmed", tx_hash=tx_hash, error=str(e))
            raise TransactionUnconfirmedError(
                f"transaction {tx_hash} not confirmed", tx_hash=tx_hash, service=self.name
            ) from e

    async def close_position(self, market: str, position_id: int) -> TransactionReceipt:
        fn = self._order_book(market).functions.closePosition(position_id)
        return await self._write("close_position", fn)

    async def reset_market(self, market: str, mindshares: list[float]) -> TransactionReceipt:
        fn = self._order_book(market).functions.resetMarket(
            [scale_mindshare(m) for m in mindshares]
        )
        return await self._write("reset_market", fn)

    async def update_crashed_out_data(
        self, entity_id: int, rank: int, mindshare_score: float
    ) -> TransactionReceipt:
        fn = self._oracle.functions.updateCrashedOutKolData(
            entity_id, rank, scale_mindshare(mindshare_score)
        )
        return await self._write("update_crashed_out_data", fn)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def health_check(self) -> bool:
        try:
            return bool(await self._run("health_check", self._w3.is_connected))
        except TransientNetworkError:
            return False
