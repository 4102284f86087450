"""
Typed Exception Hierarchy for the Reseller Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ResellerKernelError:

    ResellerKernelError (base)
    |
    +-- AuthorizationError
    |   +-- UnauthorizedError
    |       +-- ForbiddenError
    |
    +-- CreditError
    |   +-- InsufficientCreditError
    |
    +-- AccountError
    |   +-- AccountNotFoundError
    |
    +-- InvalidInputError
    |   +-- InvalidAmountError
    |   +-- InvalidRoleError
    |   +-- InvalidStatusError
    |   +-- InvalidDateError
    |   +-- DuplicateEmailError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- NotificationFailure

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Authorization   | UNAUTHORIZED                | Hierarchy/role rule rejects a credit move
                | FORBIDDEN                   | Role may not perform a lifecycle transition
----------------|-----------------------------|-----------------------------------------
Credit          | INSUFFICIENT_CREDIT         | Paying side lacks funds
----------------|-----------------------------|-----------------------------------------
Account         | NOT_FOUND                   | Unknown account or target
----------------|-----------------------------|-----------------------------------------
Input           | INVALID_AMOUNT              | Zero, non-integer or self-directed amount
                | INVALID_ROLE                | Unknown role string
                | INVALID_STATUS              | Unknown status string
                | INVALID_DATE                | Unparseable or naive date
                | DUPLICATE_EMAIL             | Email already provisioned
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Balance changed under a compare-and-set
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Mutating an audit row or a balance
                |                             | outside the ledger store
----------------|-----------------------------|-----------------------------------------
Notification    | NOTIFICATION_FAILURE        | Webhook attempt failed (soft, never raised
                |                             | to the caller of an operation)

===============================================================================
HANDLING PATTERNS
===============================================================================

The first four families (authorization, credit, account, input) abort the
unit of work; the gateway rolls the transaction back and re-raises.
ConcurrencyError is retried by the gateway a bounded number of times.
NotificationFailure is only ever logged.

    try:
        gateway.transfer_credit(caller_id, target_id, 10)
    except InsufficientCreditError as e:
        api_response(code=e.code, balance=e.balance, required=e.required)
    except UnauthorizedError as e:
        api_response(code=e.code, reason=e.reason)
"""


class ResellerKernelError(Exception):
    """
    Base exception for all reseller kernel errors.

    All subclasses have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "RESELLER_KERNEL_ERROR"


# Authorization-related exceptions


class AuthorizationError(ResellerKernelError):
    """Base exception for role and hierarchy violations."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthorizedError(AuthorizationError):
    """Caller is not allowed to act on the target account."""

    code: str = "UNAUTHORIZED"

    def __init__(self, caller_id: str, target_id: str | None, reason: str):
        self.caller_id = caller_id
        self.target_id = target_id
        self.reason = reason
        super().__init__(
            f"Account {caller_id} is not authorized on {target_id}: {reason}"
        )


class ForbiddenError(UnauthorizedError):
    """Caller's role may not perform the requested lifecycle transition."""

    code: str = "FORBIDDEN"

    def __init__(
        self,
        caller_id: str,
        target_id: str | None,
        operation: str,
        reason: str,
    ):
        self.operation = operation
        super().__init__(caller_id, target_id, f"{operation}: {reason}")


# Credit-related exceptions


class CreditError(ResellerKernelError):
    """Base exception for balance rule violations."""

    code: str = "CREDIT_ERROR"


class InsufficientCreditError(CreditError):
    """The paying side of a charge or transfer lacks funds."""

    code: str = "INSUFFICIENT_CREDIT"

    def __init__(self, account_id: str, balance: int, required: int):
        self.account_id = account_id
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient credit on {account_id}: "
            f"balance {balance}, required {required}"
        )


# Account-related exceptions


class AccountError(ResellerKernelError):
    """Base exception for account-related errors."""

    code: str = "ACCOUNT_ERROR"


class AccountNotFoundError(AccountError):
    """Account was not found."""

    code: str = "NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


# Input validation exceptions


class InvalidInputError(ResellerKernelError):
    """Malformed amount, role, status or date."""

    code: str = "INVALID_INPUT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class InvalidAmountError(InvalidInputError):
    """Credit amount is zero, not an integer, or otherwise unusable."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str):
        self.amount = amount
        super().__init__("amount", amount, reason)


class InvalidRoleError(InvalidInputError):
    """Role string is not one of the known account roles."""

    code: str = "INVALID_ROLE"

    def __init__(self, role: object, reason: str = "unknown role"):
        self.role = role
        super().__init__("role", role, reason)


class InvalidStatusError(InvalidInputError):
    """Status string is not one of the known account statuses."""

    code: str = "INVALID_STATUS"

    def __init__(self, status: object, reason: str = "unknown status"):
        self.status = status
        super().__init__("status", status, reason)


class InvalidDateError(InvalidInputError):
    code: str = "INVALID_DATE"

    def __init__(self, field: str, value: object, reason: str):
        super().__init__(field, value, reason)


class DuplicateEmailError(InvalidInputError):
    code: str = "DUPLICATE_EMAIL"

    def __init__(self, email: str):
        self.email = email
        super().__init__("email", email, "already provisioned")


# Concurrency-related exceptions


class ConcurrencyError(ResellerKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(ResellerKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    CreditTransaction and LifecycleEvent rows are append-only; Balance
    rows may only change through the ledger store's compare-and-set.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Notification exceptions


class NotificationFailure(ResellerKernelError):
    """
    A lifecycle webhook attempt did not reach a 2xx response.

    Soft error: built by the notifier for logging and never raised to the
    caller of an account or ledger operation.
    """

    code: str = "NOTIFICATION_FAILURE"

    def __init__(self, event_type: str, target_url: str, reason: str):
        self.event_type = event_type
        self.target_url = target_url
        self.reason = reason
        super().__init__(
            f"Lifecycle event {event_type} to {target_url} failed: {reason}"
        )
