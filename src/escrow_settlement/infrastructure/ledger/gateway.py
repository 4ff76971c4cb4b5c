"""web3.py gateway to the TaskEscrowPool contract.

The only module that talks to the chain. Implements the LedgerClient
protocol for the services layer.

Every admin write passes three guards before anything is signed:
    1. Live escrow check: exists, not settled, non-zero amount.
    2. Gas estimate against ledger_max_gas (a huge estimate means a revert).
    3. gas_limit * maxFeePerGas, priced in USD, against ledger_max_tx_cost_usd.

Reads are bounded by ledger_read_timeout_seconds and retried with tenacity.
Writes are never retried: a broadcast transaction that is not confirmed in
time surfaces as LedgerTimeoutError carrying its hash. Node rejections surface
as LedgerRPCError.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from functools import partial
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.domain.enums import LedgerEventType, LedgerMethod
from escrow_settlement.domain.exceptions import (
    AlreadySettledError,
    CostTooHighError,
    EmptyEscrowError,
    EscrowError,
    GasTooHighError,
    InvalidRecipientError,
    LedgerNotConfiguredError,
    LedgerRPCError,
    LedgerTimeoutError,
    NotFoundOnChainError,
    TransactionRevertedError,
)
from escrow_settlement.domain.ledger_protocol import (
    ALL_EVENT_TYPES,
    CancelledEvent,
    CostEstimate,
    DepositedEvent,
    DepositVerification,
    EscrowSnapshot,
    FeeQuote,
    LedgerEvent,
    ReleasedEvent,
    TxReceipt,
)
from escrow_settlement.infrastructure.ledger.abi import ESCROW_ABI
from escrow_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

logger = get_logger(__name__)


def _revert_reason(err: ContractLogicError) -> str:
    return getattr(err, "message", None) or str(err) or "execution reverted"


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


class LedgerGateway:
    """Async escrow contract client with guarded admin writes.

    Args:
        w3: Connected AsyncWeb3 instance.
        contract_address: Escrow contract address (any case).
        admin_private_key: Signing key for admin writes. Without it the
            gateway is read-only and writes raise LedgerNotConfiguredError.
        settings: Ledger limits and timeouts (defaults to get_settings()).
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        admin_private_key: str = "",
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._w3 = w3
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=ESCROW_ABI,
        )
        self._account = w3.eth.account.from_key(admin_private_key) if admin_private_key else None

    @property
    def admin_address(self) -> str | None:
        return self._account.address if self._account is not None else None

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _with_timeout(
        self,
        operation: str,
        awaitable: Awaitable,
        timeout: float,
        tx_hash: str | None = None,
    ) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as err:
            raise LedgerTimeoutError(operation, timeout, tx_hash=tx_hash) from err

    async def _read(self, operation: str, call: Callable[[], Awaitable]) -> Any:
        """Run a read with a timeout, retrying timeouts and transport errors."""
        settings = self._settings
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, settings.ledger_read_attempts)),
            wait=wait_exponential(multiplier=settings.ledger_retry_backoff_seconds, max=30),
            retry=retry_if_exception_type((LedgerTimeoutError, OSError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "ledger.read_retry",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._with_timeout(
                    operation, call(), settings.ledger_read_timeout_seconds
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_chain_id(self) -> int:
        return int(await self._read("chain_id", lambda: self._w3.eth.chain_id))

    async def get_head_block(self) -> int:
        return int(await self._read("block_number", lambda: self._w3.eth.block_number))

    async def get_escrow(self, task_id: int) -> EscrowSnapshot | None:
        raw = await self._read(
            "escrows", lambda: self._contract.functions.escrows(int(task_id)).call()
        )
        employer, freelancer, amount, deadline, settled, external_task_id = raw
        snapshot = EscrowSnapshot(
            task_id=int(task_id),
            employer=str(employer),
            freelancer=str(freelancer),
            amount=int(amount),
            deadline=int(deadline),
            settled=bool(settled),
            external_task_id=str(external_task_id),
        )
        return snapshot if snapshot.exists else None

    async def get_task_id_by_external_id(self, external_id: str) -> int | None:
        mapped = await self._read(
            "externalToInternal",
            lambda: self._contract.functions.externalToInternal(external_id).call(),
        )
        return int(mapped) or None

    async def get_task_count(self) -> int:
        return int(
            await self._read("taskCount", lambda: self._contract.functions.taskCount().call())
        )

    async def get_fee_data(self) -> FeeQuote:
        """Fee quote: maxFee = 2 * baseFee + priority, or legacy gasPrice."""
        block = await self._read("get_block", lambda: self._w3.eth.get_block("latest"))
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            gas_price = int(await self._read("gas_price", lambda: self._w3.eth.gas_price))
            return FeeQuote(
                max_fee_per_gas=gas_price,
                max_priority_fee_per_gas=gas_price,
                gas_price=gas_price,
            )
        priority = int(
            await self._read("max_priority_fee", lambda: self._w3.eth.max_priority_fee)
        )
        return FeeQuote(
            max_fee_per_gas=2 * int(base_fee) + priority,
            max_priority_fee_per_gas=priority,
        )

    async def fetch_events(
        self,
        from_block: int,
        to_block: int,
        kinds: Iterable[LedgerEventType] = ALL_EVENT_TYPES,
    ) -> list[LedgerEvent]:
        """Fetch and decode contract logs in [from_block, to_block], chunked."""
        if to_block < from_block:
            return []
        kinds = tuple(kinds)
        chunk = max(1, self._settings.ledger_log_chunk_size)
        events: list[LedgerEvent] = []
        for start in range(from_block, to_block + 1, chunk):
            end = min(start + chunk - 1, to_block)
            for kind in kinds:
                contract_event = getattr(self._contract.events, kind.value)
                logs = await self._read(
                    f"get_logs:{kind.value}",
                    partial(contract_event.get_logs, from_block=start, to_block=end),
                )
                events.extend(self._decode(kind, log) for log in logs)
            logger.debug(
                "ledger.logs_fetched", from_block=start, to_block=end, total=len(events)
            )
        events.sort(key=lambda e: e.sort_key)
        return events

    @staticmethod
    def _decode(kind: LedgerEventType, log: Any) -> LedgerEvent:
        args = log["args"]
        envelope = {
            "task_id": int(args["taskId"]),
            "tx_hash": _hex(log["transactionHash"]),
            "block_number": int(log["blockNumber"]),
            "log_index": int(log["logIndex"]),
        }
        if kind == LedgerEventType.DEPOSITED:
            return DepositedEvent(
                **envelope,
                external_id_hash=_hex(args["externalId"]),
                employer=str(args["employer"]),
                amount=int(args["amount"]),
            )
        if kind == LedgerEventType.RELEASED:
            return ReleasedEvent(
                **envelope,
                to=str(args["to"]),
                amount=int(args["amount"]),
                reason=str(args["reason"]),
            )
        return CancelledEvent(
            **envelope,
            employer=str(args["employer"]),
            amount=int(args["amount"]),
            reason=str(args["reason"]),
        )

    async def verify_deposit(
        self, external_id: str, expected_freelancer: str
    ) -> DepositVerification:
        """Check the external id maps to a live, unsettled escrow for the freelancer."""
        try:
            task_id = await self.get_task_id_by_external_id(external_id)
            if task_id is None:
                return DepositVerification(valid=False, reason="no deposit for external id")
            snapshot = await self.get_escrow(task_id)
        except EscrowError as exc:
            logger.warning("ledger.verify_deposit_failed", external_id=external_id, error=exc.code)
            return DepositVerification(valid=False, reason=exc.message)

        if snapshot is None:
            return DepositVerification(
                valid=False, onchain_task_id=task_id, reason="escrow not found"
            )
        if snapshot.settled:
            return DepositVerification(
                valid=False, onchain_task_id=task_id, snapshot=snapshot, reason="already settled"
            )
        if snapshot.freelancer.lower() != expected_freelancer.lower():
            return DepositVerification(
                valid=False, onchain_task_id=task_id, snapshot=snapshot, reason="freelancer mismatch"
            )
        return DepositVerification(valid=True, onchain_task_id=task_id, snapshot=snapshot)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_signer(self) -> str:
        if self._account is None:
            raise LedgerNotConfiguredError("admin private key not set")
        return self._account.address

    async def _check_escrow(self, task_id: int) -> EscrowSnapshot:
        snapshot = await self.get_escrow(task_id)
        if snapshot is None:
            raise NotFoundOnChainError(task_id)
        if snapshot.settled:
            raise AlreadySettledError(task_id)
        if snapshot.amount == 0:
            raise EmptyEscrowError(task_id)
        return snapshot

    def _function(self, method: LedgerMethod, task_id: int, to: str | None, reason: str):
        functions = self._contract.functions
        if method == LedgerMethod.CANCEL:
            return functions.cancel(int(task_id), reason)
        if not to:
            raise InvalidRecipientError(to)
        try:
            recipient = Web3.to_checksum_address(to)
        except ValueError as err:
            raise InvalidRecipientError(to) from err
        if method == LedgerMethod.RELEASE:
            return functions.release(int(task_id), recipient, reason)
        return functions.releaseAfterDeadline(int(task_id), recipient, reason)

    async def _estimate_gas(self, fn: Any, sender: str | None, method: LedgerMethod) -> int:
        tx_params = {"from": sender} if sender else {}
        try:
            return int(
                await self._read(f"estimate_gas:{method.value}", lambda: fn.estimate_gas(tx_params))
            )
        except ContractLogicError as err:
            raise TransactionRevertedError(_revert_reason(err)) from err

    def _price(self, method: LedgerMethod, gas_estimate: int, fees: FeeQuote) -> CostEstimate:
        settings = self._settings
        buffered = gas_estimate * (100 + settings.ledger_gas_buffer_percent) // 100
        gas_limit = min(buffered, settings.ledger_max_gas)
        cost_wei = gas_limit * fees.max_fee_per_gas
        cost_native = Decimal(Web3.from_wei(cost_wei, "ether"))
        cost_usd = cost_native * settings.ledger_native_usd_price
        return CostEstimate(
            method=method,
            gas_estimate=gas_estimate,
            gas_limit=gas_limit,
            max_fee_per_gas=fees.max_fee_per_gas,
            cost_wei=cost_wei,
            cost_native=cost_native,
            cost_usd=cost_usd,
            within_limits=(
                gas_estimate <= settings.ledger_max_gas
                and cost_usd <= settings.ledger_max_tx_cost_usd
            ),
        )

    async def estimate_cost(
        self,
        method: LedgerMethod,
        task_id: int,
        to: str | None,
        reason: str,
    ) -> CostEstimate:
        """Run the escrow check and estimation without enforcing the ceilings."""
        await self._check_escrow(task_id)
        fn = self._function(method, task_id, to, reason)
        gas_estimate = await self._estimate_gas(fn, self.admin_address, method)
        fees = await self.get_fee_data()
        return self._price(method, gas_estimate, fees)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _guarded_submit(
        self,
        method: LedgerMethod,
        task_id: int,
        to: str | None,
        reason: str,
    ) -> TxReceipt:
        sender = self._require_signer()
        log = logger.bind(task_id=task_id, method=method.value)

        await self._check_escrow(task_id)
        fn = self._function(method, task_id, to, reason)

        gas_estimate = await self._estimate_gas(fn, sender, method)
        if gas_estimate > self._settings.ledger_max_gas:
            log.warning("ledger.gas_too_high", gas_estimate=gas_estimate)
            raise GasTooHighError(gas_estimate, self._settings.ledger_max_gas)

        fees = await self.get_fee_data()
        estimate = self._price(method, gas_estimate, fees)
        if estimate.cost_usd > self._settings.ledger_max_tx_cost_usd:
            log.warning("ledger.cost_too_high", cost_usd=str(estimate.cost_usd))
            raise CostTooHighError(
                str(estimate.cost_native),
                str(estimate.cost_usd.quantize(Decimal("0.01"))),
                str(self._settings.ledger_max_tx_cost_usd),
            )

        log.info(
            "ledger.guards_passed",
            gas_estimate=gas_estimate,
            gas_limit=estimate.gas_limit,
            cost_usd=str(estimate.cost_usd.quantize(Decimal("0.01"))),
        )
        return await self._send_and_wait(fn, sender, estimate.gas_limit, fees, method)

    async def _send_and_wait(
        self,
        fn: Any,
        sender: str,
        gas_limit: int,
        fees: FeeQuote,
        method: LedgerMethod,
    ) -> TxReceipt:
        settings = self._settings
        nonce = await self._read(
            "get_transaction_count",
            lambda: self._w3.eth.get_transaction_count(sender, "pending"),
        )
        chain_id = settings.ledger_chain_id or await self.get_chain_id()

        tx_params: dict[str, Any] = {
            "from": sender,
            "nonce": nonce,
            "gas": gas_limit,
            "chainId": chain_id,
        }
        if fees.gas_price is not None:
            tx_params["gasPrice"] = fees.gas_price
        else:
            tx_params["maxFeePerGas"] = fees.max_fee_per_gas
            tx_params["maxPriorityFeePerGas"] = fees.max_priority_fee_per_gas

        try:
            tx = await fn.build_transaction(tx_params)
        except ContractLogicError as err:
            raise TransactionRevertedError(_revert_reason(err)) from err
        except (Web3Exception, ValueError) as err:
            raise LedgerRPCError(f"build:{method.value}", str(err)) from err

        signed = self._account.sign_transaction(tx)
        # The hash is known before the node sees the tx; a send that fails
        # in flight may still have been accepted.
        tx_hash = Web3.to_hex(signed.hash)
        log = logger.bind(method=method.value, tx_hash=tx_hash)

        try:
            await self._with_timeout(
                f"send:{method.value}",
                self._w3.eth.send_raw_transaction(signed.raw_transaction),
                settings.ledger_read_timeout_seconds,
                tx_hash=tx_hash,
            )
        except LedgerTimeoutError:
            log.error("ledger.send_timeout", timeout=settings.ledger_read_timeout_seconds)
            raise
        except ContractLogicError as err:
            raise TransactionRevertedError(_revert_reason(err)) from err
        except (Web3Exception, ValueError) as err:
            # Rejected by the node: nothing was broadcast.
            log.error("ledger.send_rejected", error=str(err))
            raise LedgerRPCError(f"send:{method.value}", str(err)) from err
        except OSError as err:
            log.error("ledger.send_failed", error=str(err))
            raise LedgerRPCError(f"send:{method.value}", str(err), tx_hash=tx_hash) from err

        log.info("ledger.tx_submitted", nonce=nonce, gas_limit=gas_limit)

        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=settings.ledger_tx_timeout_seconds
            )
        except TimeExhausted as err:
            log.error("ledger.tx_unconfirmed", timeout=settings.ledger_tx_timeout_seconds)
            raise LedgerTimeoutError(
                f"wait_for_receipt:{method.value}",
                settings.ledger_tx_timeout_seconds,
                tx_hash=tx_hash,
            ) from err
        except (Web3Exception, ValueError, OSError) as err:
            log.error("ledger.receipt_failed", error=str(err))
            raise LedgerRPCError(
                f"wait_for_receipt:{method.value}", str(err), tx_hash=tx_hash
            ) from err

        if receipt["status"] == 0:
            log.error("ledger.tx_reverted", block_number=receipt["blockNumber"])
            raise TransactionRevertedError("execution reverted", tx_hash=tx_hash)

        log.info(
            "ledger.tx_confirmed",
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=receipt.get("effectiveGasPrice"),
        )

    async def release(self, task_id: int, to: str, reason: str) -> TxReceipt:
        return await self._guarded_submit(LedgerMethod.RELEASE, task_id, to, reason)

    async def cancel(self, task_id: int, reason: str) -> TxReceipt:
        return await self._guarded_submit(LedgerMethod.CANCEL, task_id, None, reason)

    async def release_after_deadline(self, task_id: int, to: str, reason: str) -> TxReceipt:
        return await self._guarded_submit(LedgerMethod.RELEASE_AFTER_DEADLINE, task_id, to, reason)


def create_gateway(settings: Settings | None = None) -> LedgerGateway:
    """Build a gateway over an HTTP RPC endpoint from settings."""
    settings = settings or get_settings()
    if not settings.ledger_configured:
        raise LedgerNotConfiguredError()
    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))
    gateway = LedgerGateway(
        w3,
        settings.escrow_contract_address,
        settings.admin_private_key,
        settings,
    )
    logger.info(
        "ledger.gateway_created",
        contract=settings.escrow_contract_address,
        admin=gateway.admin_address,
    )
    return gateway
