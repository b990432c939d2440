"""
Payment Settlement Module.

Starts gateway checkouts for orders and wallet top-ups, and reconciles the
gateway's answer back into the ledger:

    - A reference matching an order marks it paid (idempotently)
    - A reference matching a top-up intent credits that intent's user once
    - Anything else is rejected without touching the ledger

Dependencies:
    - escrow_service.py: Order creation and the pending -> paid transition
    - paystack_service.py: Gateway adapter
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from config import get_config, Config
from escrow_service import EscrowService
from exceptions import (
    AccessDeniedError, GatewayUnverifiedError, NotFoundError, ValidationError,
)
from models import AccessStatus, Order, TopupIntent
from paystack_service import PaystackError, SUCCESS_STATUS
from utils import generate_reference, validate_amount

logger = logging.getLogger(__name__)

MAX_TOPUP_AMOUNT = Decimal('1000000')


@dataclass
class CheckoutSession:
    """A started gateway checkout."""
    reference: str
    authorization_url: str
    order: Optional[Order] = None
    topup: Optional[TopupIntent] = None


class SettlementService:
    """
    Reconciles gateway payment results with orders and wallet top-ups.

    Attributes:
        db: Ledger store
        escrow: Escrow state machine
        gateway: Payment gateway adapter (``initialize``/``verify``)
        config: Configuration instance
    """

    def __init__(self, database, escrow: EscrowService, gateway, config: Optional[Config] = None):
        self.db = database
        self.escrow = escrow
        self.gateway = gateway
        self.config = config or get_config()

    async def start_checkout(self, product_id: int, buyer_id: int, email: str) -> CheckoutSession:
        """
        Create a pending order and start the gateway checkout for it.

        Raises:
            NotFoundError / AccessDeniedError / InvalidTransitionError: From order creation
            GatewayUnverifiedError: If the gateway refused to start the checkout
        """
        order = await self.escrow.create_order(product_id, buyer_id)
        try:
            url = await self.gateway.initialize(order.amount, order.payment_reference, email)
        except (PaystackError, ValueError) as e:
            logger.error(f"Checkout initialization failed for order {order.id}: {e}")
            raise GatewayUnverifiedError(order.payment_reference, str(e)) from e

        logger.info(f"Checkout started for order {order.id} ({order.payment_reference})")
        return CheckoutSession(order.payment_reference, url, order=order)

    async def start_topup(self, user_id: int, amount, email: str) -> CheckoutSession:
        """
        Record a top-up intent for the user, then start the gateway checkout.

        The intent binds the gateway reference to the user, so the callback
        credits whoever started the top-up.

        Raises:
            NotFoundError: If the user does not exist
            AccessDeniedError: If the user is banned
            ValidationError: If the amount is invalid
            GatewayUnverifiedError: If the gateway refused to start the checkout
        """
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        access = AccessStatus.from_user(user)
        if not access.is_active:
            raise AccessDeniedError(user_id, access.describe())

        is_valid, amount, error = validate_amount(amount, max_amount=MAX_TOPUP_AMOUNT)
        if not is_valid:
            raise ValidationError(error)

        reference = generate_reference('TOP')
        intent = await self.db.create_topup_intent(reference, user_id, amount)

        try:
            url = await self.gateway.initialize(amount, reference, email)
        except (PaystackError, ValueError) as e:
            logger.error(f"Top-up initialization failed for {reference}: {e}")
            raise GatewayUnverifiedError(reference, str(e)) from e

        logger.info(f"Top-up {reference} of {amount} started for user {user_id}")
        return CheckoutSession(reference, url, topup=intent)

    async def reconcile_callback(
        self,
        reference: str,
        gateway_status: str,
        amount_paid: Decimal
    ) -> Union[Order, TopupIntent]:
        """
        Apply a gateway result to the ledger.

        Args:
            reference: Payment reference the gateway reported
            gateway_status: Gateway transaction status (``"success"`` on success)
            amount_paid: Amount the gateway says was paid, in naira

        Returns:
            The paid order, or the top-up intent that was credited

        Raises:
            GatewayUnverifiedError: If the gateway did not report success, or an
                order was underpaid
            NotFoundError: If the reference matches neither an order nor a
                top-up intent
        """
        if gateway_status != SUCCESS_STATUS:
            logger.warning(f"Gateway reported '{gateway_status}' for {reference}, nothing applied")
            raise GatewayUnverifiedError(reference, f"gateway status '{gateway_status}'")

        amount_paid = Decimal(str(amount_paid))

        order = await self.db.get_order_by_reference(reference)
        if order is not None:
            if amount_paid < order.amount:
                logger.error(
                    f"Underpayment for order {order.id}: paid {amount_paid}, expected {order.amount}"
                )
                raise GatewayUnverifiedError(reference, "amount paid is less than the order amount")
            return await self.escrow.mark_paid(reference)

        intent = await self.db.get_topup_intent(reference)
        if intent is None:
            logger.error(f"Payment {reference} matches no order or top-up, nothing credited")
            raise NotFoundError("Payment reference", reference)

        credited = await self.db.credit_topup(reference, amount_paid)
        if credited is None:
            logger.info(f"Top-up {reference} already credited, ignoring")
            return await self.db.get_topup_intent(reference)

        if amount_paid != intent.amount:
            logger.warning(
                f"Top-up {reference} paid {amount_paid} but {intent.amount} was requested"
            )
        return credited

    async def verify_and_reconcile(self, reference: str) -> Union[Order, TopupIntent]:
        """
        Verify a reference with the gateway, then reconcile it.

        Raises:
            GatewayUnverifiedError: If the gateway could not be reached or did
                not confirm the payment
            NotFoundError: If the reference is unknown
        """
        try:
            result = await self.gateway.verify(reference)
        except PaystackError as e:
            logger.error(f"Verification of {reference} failed: {e}")
            raise GatewayUnverifiedError(reference, str(e)) from e

        return await self.reconcile_callback(reference, result.status, result.amount_paid)
