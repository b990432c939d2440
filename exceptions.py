"""
Exceptions shared by the escrow, fraud, listing and settlement services.

Transition-level errors are raised before or instead of any write, so a
caller catching one of these can rely on the ledger being unchanged (the
only exception is FraudRejectedError, whose flag/ban side effect has
already been applied on purpose).
"""

from datetime import datetime, timedelta
from typing import Optional


class MarketplaceError(Exception):
    """Base exception for marketplace business-rule failures."""
    pass


class ValidationError(MarketplaceError):
    """Raised when caller input is malformed."""
    pass


class NotFoundError(MarketplaceError):
    """Raised when a referenced order, product or user does not exist."""

    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class PermissionDeniedError(MarketplaceError):
    """Raised when the actor is not the owner/party the operation requires."""
    pass


class AccessDeniedError(MarketplaceError):
    """Raised when a banned user attempts a gated action."""

    def __init__(self, user_id: int, status_text: str):
        self.user_id = user_id
        super().__init__(f"Account {user_id} is {status_text}")


class InvalidTransitionError(MarketplaceError):
    """Raised when an order operation is attempted outside its source state."""
    pass


class ClaimNotYetAvailableError(InvalidTransitionError):
    """Raised when a seller claims funds before the claim window has elapsed."""

    def __init__(self, order_id: int, available_at: datetime, remaining: timedelta):
        self.order_id = order_id
        self.available_at = available_at
        self.remaining = remaining
        hours = max(remaining.total_seconds(), 0) / 3600
        super().__init__(
            f"Funds for order {order_id} can be claimed in {hours:.1f} hours "
            f"(at {available_at.isoformat()})"
        )


class DisputeActiveError(InvalidTransitionError):
    """Raised when a timed claim is attempted on a disputed order."""
    pass


class DeliveryCodeMismatchError(InvalidTransitionError):
    """Raised when the supplied delivery code does not match."""

    def __init__(self, order_id: int, attempts_left: int):
        self.order_id = order_id
        self.attempts_left = attempts_left
        super().__init__(
            f"Invalid delivery code for order {order_id} "
            f"({attempts_left} attempts left)"
        )


class DeliveryCodeLockedError(InvalidTransitionError):
    """Raised once the delivery-code attempt limit has been reached."""
    pass


class FraudRejectedError(MarketplaceError):
    """Raised when the fraud engine rejects a gated action."""

    def __init__(self, verdict):
        self.verdict = verdict
        super().__init__(verdict.reason)


class GatewayUnverifiedError(MarketplaceError):
    """Raised when a payment could not be confirmed with the gateway."""

    def __init__(self, reference: str, detail: Optional[str] = None):
        self.reference = reference
        self.detail = detail
        super().__init__(f"Payment verification failed for {reference}"
                         + (f": {detail}" if detail else ""))


class PayoutError(MarketplaceError):
    """Raised when a wallet withdrawal could not be completed."""
    pass


class PayoutUnconfirmedError(PayoutError):
    """
    Raised when a transfer may have been sent but its outcome is unknown.

    The wallet stays debited until an admin checks the transfer reference.
    """

    def __init__(self, reference: str, detail: str):
        self.reference = reference
        super().__init__(
            f"Withdrawal {reference} is being reviewed: {detail}. "
            "Your balance will be restored if the transfer did not go through."
        )
