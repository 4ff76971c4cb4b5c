"""Domain exceptions for the escrow settlement engine.

These exceptions are framework-agnostic and represent ledger guard failures
and business rule violations. The API layer's middleware translates them to
HTTP responses; the Deadline Sweeper catches them per record.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Ledger Guard Errors ---


class NotFoundOnChainError(EscrowError):
    """Raised when the contract has no escrow for a task id (zero employer)."""

    def __init__(self, task_id: int | str) -> None:
        super().__init__(
            message=f"Escrow not found on-chain: task {task_id}",
            code="NOT_FOUND_ON_CHAIN",
        )
        self.task_id = str(task_id)


class AlreadySettledError(EscrowError):
    """Raised when an escrow is already settled, or another path is settling it."""

    def __init__(self, task_id: int | str, detail: str = "already settled") -> None:
        super().__init__(
            message=f"Escrow for task {task_id} is {detail}",
            code="ALREADY_SETTLED",
        )
        self.task_id = str(task_id)


class EmptyEscrowError(EscrowError):
    """Raised when an escrow holds no funds."""

    def __init__(self, task_id: int | str) -> None:
        super().__init__(
            message=f"Escrow for task {task_id} holds no funds",
            code="EMPTY_ESCROW",
        )
        self.task_id = str(task_id)


class GasTooHighError(EscrowError):
    """Raised when the gas estimate exceeds the hard ceiling.

    A huge estimate usually means the call will revert.
    """

    def __init__(self, estimate: int, ceiling: int) -> None:
        super().__init__(
            message=f"Gas estimate {estimate} exceeds ceiling {ceiling}",
            code="GAS_TOO_HIGH",
        )
        self.estimate = estimate
        self.ceiling = ceiling


class CostTooHighError(EscrowError):
    """Raised when gas_limit * maxFeePerGas exceeds the USD cost ceiling."""

    def __init__(self, cost_native: str, cost_usd: str, ceiling_usd: str) -> None:
        super().__init__(
            message=(
                f"Transaction cost {cost_native} native (~{cost_usd} USD) "
                f"exceeds ceiling {ceiling_usd} USD"
            ),
            code="COST_TOO_HIGH",
        )
        self.cost_native = cost_native
        self.cost_usd = cost_usd
        self.ceiling_usd = ceiling_usd


class TransactionRevertedError(EscrowError):
    """Raised when the contract reverts, during estimation or after mining.

    The raw revert reason is kept for logs and the audit trail.
    """

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(
            message=f"Transaction reverted: {reason}",
            code="TRANSACTION_REVERTED",
        )
        self.reason = reason
        self.tx_hash = tx_hash


class LedgerTimeoutError(EscrowError):
    """Raised when a chain call exceeds its timeout.

    For writes, tx_hash is set when the transaction was broadcast but not
    confirmed in time: re-check settlement before resubmitting.
    """

    def __init__(self, operation: str, timeout: float, tx_hash: str | None = None) -> None:
        super().__init__(
            message=f"Ledger call '{operation}' timed out after {timeout}s",
            code="LEDGER_TIMEOUT",
        )
        self.operation = operation
        self.timeout = timeout
        self.tx_hash = tx_hash


class LedgerRPCError(EscrowError):
    """Raised when the node rejects a call (nonce too low, insufficient funds, ...).

    tx_hash is set when the failure came after the transaction was handed
    to the node, so it may still be mined.
    """

    def __init__(self, operation: str, detail: str, tx_hash: str | None = None) -> None:
        super().__init__(
            message=f"Ledger call '{operation}' failed: {detail}",
            code="LEDGER_RPC_ERROR",
        )
        self.operation = operation
        self.detail = detail
        self.tx_hash = tx_hash


class InvalidRecipientError(EscrowError):
    """Raised when a release has no recipient or a malformed one."""

    def __init__(self, recipient: str | None) -> None:
        super().__init__(
            message=f"Invalid recipient address: {recipient!r}",
            code="INVALID_RECIPIENT",
        )
        self.recipient = recipient


def may_be_broadcast(exc: BaseException) -> bool:
    """True when a failed write may still land on-chain.

    Such a failure keeps its settlement claim and idempotency key: the row is
    re-checked when the lease expires instead of being resubmitted.
    """
    return isinstance(exc, (LedgerTimeoutError, LedgerRPCError)) and bool(exc.tx_hash)


class LedgerNotConfiguredError(EscrowError):
    """Raised when a ledger operation is requested without RPC/contract settings."""

    def __init__(self, detail: str = "RPC URL or escrow contract address not set") -> None:
        super().__init__(message=f"Ledger not configured: {detail}", code="LEDGER_NOT_CONFIGURED")


# --- Settlement Policy Errors ---


class UnknownApplicationStatusError(EscrowError):
    """Raised when the policy meets an application status it has no rule for.

    The escrow is left untouched and flagged for operator review.
    """

    def __init__(self, task_id: int | str, status: str) -> None:
        super().__init__(
            message=f"Unknown application status '{status}' for task {task_id}",
            code="UNKNOWN_APPLICATION_STATUS",
        )
        self.task_id = str(task_id)
        self.status = status


# --- Off-chain Record Errors ---


class EscrowRecordNotFoundError(EscrowError):
    """Raised when no mirror row exists for an on-chain task id."""

    def __init__(self, key: str) -> None:
        super().__init__(message=f"Escrow record not found: {key}", code="ESCROW_RECORD_NOT_FOUND")
        self.key = key


class TaskNotFoundError(EscrowError):
    """Raised when an off-chain Task does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(message=f"Task not found: {task_id}", code="TASK_NOT_FOUND")
        self.task_id = task_id


class NotTaskOwnerError(EscrowError):
    """Raised when a profile acts on a Task it does not own."""

    def __init__(self, task_id: str, profile_id: str) -> None:
        super().__init__(
            message=f"Profile {profile_id} does not own task {task_id}",
            code="NOT_TASK_OWNER",
        )


class NotAdminError(EscrowError):
    """Raised when a profile outside admin_profile_ids requests an admin action."""

    def __init__(self, profile_id: str) -> None:
        super().__init__(
            message=f"Profile {profile_id} is not an escrow admin",
            code="NOT_ADMIN",
        )
        self.profile_id = profile_id


class EscrowNotInitializedError(EscrowError):
    """Raised when a Task has no external id, so no escrow can exist for it."""

    def __init__(self, task_id: str) -> None:
        super().__init__(
            message=f"Task {task_id} has no external id (escrow not initialized)",
            code="ESCROW_NOT_INITIALIZED",
        )


class DeadlinePassedError(EscrowError):
    """Raised when an employer acts after the deadline; the sweeper owns that case."""

    def __init__(self, task_id: str, deadline: int) -> None:
        super().__init__(
            message=(
                f"Deadline {deadline} for task {task_id} has passed; "
                "deadline settlement will handle it"
            ),
            code="DEADLINE_PASSED",
        )
        self.deadline = deadline


# --- Idempotency Errors ---


class DuplicateOperationError(EscrowError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
