"""
Escrow Service Module for the campus marketplace.

This module implements the order state machine that holds a buyer's payment
until a release condition is met:

    pending -> paid_pending_delivery -> shipped -> completed

with ``disputed`` as a flag that can be raised on any non-completed order.

Release paths:
    - Delivery code: buyer or seller enters the 6-digit code, immediate release
    - Buyer confirmation: buyer confirms receipt, immediate release
    - Timed claim: seller claims 24 hours after marking the order delivered,
      unless a dispute is open
    - Admin resolution: an admin clears a dispute and optionally releases

Every release goes through ``LedgerDatabase.complete_order`` so the seller is
credited exactly once no matter how many release paths race.

Dependencies:
    - database.py: Ledger store
    - notifier.py: Buyer/seller notifications
    - config.py: Fee, claim window and delivery-code limits
"""

import hmac
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple

from config import get_config, Config
from exceptions import (
    AccessDeniedError, ClaimNotYetAvailableError, DeliveryCodeLockedError,
    DeliveryCodeMismatchError, DisputeActiveError, InvalidTransitionError,
    NotFoundError, PermissionDeniedError, ValidationError,
)
from models import AccessStatus, Order, OrderStatus
from utils import format_currency, generate_delivery_code, generate_reference, sanitize_input, utcnow

logger = logging.getLogger(__name__)


RELEASABLE_STATES = [OrderStatus.PAID_PENDING_DELIVERY, OrderStatus.SHIPPED]


class EscrowService:
    """
    Core escrow business logic service.

    Attributes:
        db: Ledger store
        config: Configuration instance
        notifier: Sends buyer/seller notifications by email (optional)
        admin_notifier: Sends admin alerts, e.g. to Telegram (optional)
    """

    def __init__(
        self,
        database,
        config: Optional[Config] = None,
        notifier=None,
        admin_notifier=None
    ):
        self.db = database
        self.config = config or get_config()
        self.notifier = notifier
        self.admin_notifier = admin_notifier
        logger.info("EscrowService initialized successfully")

    @property
    def claim_window(self) -> timedelta:
        return timedelta(hours=self.config.claim_window_hours)

    def compute_split(self, amount: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Split an order amount into (service_fee, seller_amount).

        Example:
            >>> service.compute_split(Decimal('50000'))
            (Decimal('2000.00'), Decimal('48000.00'))
        """
        amount = Decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        fee = (amount * self.config.service_fee_percent / Decimal('100')).quantize(
            Decimal('0.01'), rounding=ROUND_HALF_UP
        )
        return fee, amount - fee

    # ==================== ORDER CREATION ====================

    async def create_order(
        self,
        product_id: int,
        buyer_id: int,
        payment_reference: Optional[str] = None
    ) -> Order:
        """
        Create a pending order for a product.

        The amount is taken from the stored product price; the fee and the
        seller's share are computed here and never accepted from callers.

        Args:
            product_id: Product being purchased
            buyer_id: Purchasing user
            payment_reference: Gateway reference (generated when omitted)

        Returns:
            The new pending order

        Raises:
            NotFoundError: If the product, its seller or the buyer does not exist
            AccessDeniedError: If the buyer is banned
            InvalidTransitionError: If the buyer is the product's seller
        """
        product = await self.db.get_product(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)

        if product.seller_id is None or await self.db.get_user(product.seller_id) is None:
            raise NotFoundError("Seller of product", product_id)

        buyer = await self.db.get_user(buyer_id)
        if buyer is None:
            raise NotFoundError("User", buyer_id)

        access = AccessStatus.from_user(buyer)
        if not access.is_active:
            raise AccessDeniedError(buyer_id, access.describe())

        if product.seller_id == buyer_id:
            raise InvalidTransitionError("You cannot buy your own product")

        fee, seller_amount = self.compute_split(product.price)
        reference = payment_reference or generate_reference('ORD')

        order = await self.db.create_order(
            buyer_id=buyer_id,
            seller_id=product.seller_id,
            product_id=product.id,
            amount=product.price,
            service_fee=fee,
            seller_amount=seller_amount,
            delivery_code=generate_delivery_code(),
            payment_reference=reference
        )

        logger.info(
            f"Order {order.id} created: buyer={buyer_id}, seller={product.seller_id}, "
            f"amount={order.amount}, fee={fee}"
        )
        return order

    # ==================== STATE TRANSITIONS ====================

    async def mark_paid(self, reference: str) -> Order:
        """
        Move an order from pending to paid_pending_delivery.

        Only the settlement adapter calls this, after the gateway confirmed the
        payment. Calling it again for the same reference returns the order
        unchanged.

        Raises:
            NotFoundError: If no order carries this reference
        """
        order = await self.db.mark_order_paid(reference)
        if order is None:
            current = await self.db.get_order_by_reference(reference)
            if current is None:
                raise NotFoundError("Order with reference", reference)
            logger.info(f"Order {current.id} already past pending ({current.status.value}), ignoring")
            return current

        logger.info(f"Order {order.id} paid, funds held in escrow")

        await self.notify_user(
            order.seller_id,
            "New paid order",
            f"Order #{order.id} has been paid ({format_currency(order.amount, self.config.currency)}).\n"
            f"Your share after fees is {format_currency(order.seller_amount, self.config.currency)}.\n"
            f"Delivery code: {order.delivery_code}\n"
            f"Mark the order as delivered once you hand the item over."
        )
        await self.notify_user(
            order.buyer_id,
            "Payment received",
            f"Your payment for order #{order.id} is held in escrow until you receive your item."
        )
        return order

    async def mark_shipped(self, order_id: int, seller_id: int) -> Order:
        """
        Seller marks the order delivered, starting the claim window.

        Raises:
            NotFoundError: If the order does not exist
            PermissionDeniedError: If the caller is not the seller
            InvalidTransitionError: If the order is not paid_pending_delivery
        """
        order = await self.get_order(order_id)
        if order.seller_id != seller_id:
            raise PermissionDeniedError("Only the seller can mark this order as delivered")

        updated = await self.db.mark_order_shipped(order_id, seller_id)
        if updated is None:
            current = await self.get_order(order_id)
            raise InvalidTransitionError(
                f"Order {order_id} cannot be marked delivered from state '{current.status.value}'"
            )

        logger.info(f"Order {order_id} marked delivered by seller {seller_id}")

        await self.notify_user(
            updated.buyer_id,
            "Order delivered",
            f"The seller marked order #{order_id} as delivered.\n"
            f"If you did not receive it, open a dispute within "
            f"{self.config.claim_window_hours} hours."
        )
        return updated

    async def confirm_delivery_code(self, order_id: int, code: str, actor_id: int) -> Order:
        """
        Complete an order by entering its delivery code.

        A wrong code changes nothing except the failed-attempt counter. Once
        the configured number of failures is reached the order is locked
        until an admin resolves it.

        Args:
            order_id: Order to complete
            code: The 6-digit code supplied by the caller
            actor_id: Buyer or seller of the order

        Returns:
            The completed order

        Raises:
            PermissionDeniedError: If the caller is not a party to the order
            InvalidTransitionError: If the order is pending or already completed
            DeliveryCodeLockedError: If too many wrong codes were entered
            DeliveryCodeMismatchError: If the code is wrong
        """
        order = await self.get_order(order_id)
        if not order.is_party(actor_id):
            raise PermissionDeniedError("Only the buyer or seller can confirm this order")

        self._require_releasable(order)

        max_attempts = self.config.delivery_code_max_attempts
        if order.code_attempts >= max_attempts:
            raise DeliveryCodeLockedError(
                f"Order {order_id} is locked after {order.code_attempts} wrong codes; contact support"
            )

        supplied = str(code or '').strip()
        if not hmac.compare_digest(supplied.encode(), order.delivery_code.encode()):
            attempts = await self.db.record_failed_code_attempt(order_id)
            if attempts is None:
                raise InvalidTransitionError(f"Order {order_id} is already completed")
            logger.warning(f"Wrong delivery code for order {order_id} ({attempts}/{max_attempts})")
            if attempts >= max_attempts:
                await self._notify_admin(
                    "Delivery code lockout",
                    f"Order #{order_id} locked after {attempts} wrong delivery codes."
                )
            raise DeliveryCodeMismatchError(order_id, max(max_attempts - attempts, 0))

        completed = await self.db.complete_order(order_id, RELEASABLE_STATES, code_confirmed=True)
        if completed is None:
            raise InvalidTransitionError(f"Order {order_id} is already completed")

        logger.info(f"Order {order_id} released by delivery code (actor {actor_id})")
        await self._notify_released(completed)
        return completed

    async def confirm_receipt(self, order_id: int, buyer_id: int) -> Order:
        """
        Buyer confirms receipt, releasing funds immediately.

        Raises:
            PermissionDeniedError: If the caller is not the buyer
            InvalidTransitionError: If the order is unpaid or already completed
        """
        order = await self.get_order(order_id)
        if order.buyer_id != buyer_id:
            raise PermissionDeniedError("Only the buyer can confirm receipt")

        self._require_releasable(order)

        completed = await self.db.complete_order(order_id, RELEASABLE_STATES, buyer_confirmed=True)
        if completed is None:
            raise InvalidTransitionError(f"Order {order_id} is already completed")

        logger.info(f"Order {order_id} released by buyer confirmation")
        await self._notify_released(completed)
        return completed

    async def claim_funds(self, order_id: int, seller_id: int, now: Optional[datetime] = None) -> Order:
        """
        Seller claims the funds once the claim window has passed.

        Args:
            order_id: Order to claim
            seller_id: Seller of the order
            now: Current time (defaults to UTC now)

        Returns:
            The completed order

        Raises:
            PermissionDeniedError: If the caller is not the seller
            InvalidTransitionError: If the order is not in the shipped state
            DisputeActiveError: If a dispute is open
            ClaimNotYetAvailableError: If the window has not elapsed
        """
        now = now or utcnow()
        order = await self.get_order(order_id)
        if order.seller_id != seller_id:
            raise PermissionDeniedError("Only the seller can claim funds for this order")

        self._check_claimable(order, now)

        completed = await self.db.complete_order(
            order_id,
            [OrderStatus.SHIPPED],
            require_undisputed=True,
            delivered_before=now - self.claim_window
        )
        if completed is None:
            # Lost a race; report why using the row as it is now
            self._check_claimable(await self.get_order(order_id), now)
            raise InvalidTransitionError(f"Order {order_id} could not be claimed")

        logger.info(f"Order {order_id} claimed by seller {seller_id}")
        await self._notify_released(completed)
        return completed

    def _check_claimable(self, order: Order, now: datetime) -> None:
        if order.is_completed:
            raise InvalidTransitionError(f"Order {order.id} is already completed")
        if order.status != OrderStatus.SHIPPED or order.delivered_at is None:
            raise InvalidTransitionError(
                f"Order {order.id} must be marked delivered before funds can be claimed "
                f"(current state '{order.status.value}')"
            )
        if order.disputed:
            raise DisputeActiveError(f"Order {order.id} is under dispute; funds are frozen")

        available_at = order.claim_available_at(self.claim_window)
        if now < available_at:
            raise ClaimNotYetAvailableError(order.id, available_at, available_at - now)

    def _require_releasable(self, order: Order) -> None:
        if order.is_completed:
            raise InvalidTransitionError(f"Order {order.id} is already completed")
        if order.status not in RELEASABLE_STATES:
            raise InvalidTransitionError(f"Order {order.id} has not been paid yet")

    # ==================== DISPUTES ====================

    async def open_dispute(self, order_id: int, user_id: int, reason: str) -> Order:
        """
        Flag an order as disputed, freezing the timed claim.

        Opening a dispute on an already disputed order is a no-op.

        Raises:
            PermissionDeniedError: If the caller is not a party to the order
            InvalidTransitionError: If the order is completed
            ValidationError: If no reason is given
        """
        order = await self.get_order(order_id)
        if not order.is_party(user_id):
            raise PermissionDeniedError("Only the buyer or seller can dispute this order")
        if order.is_completed:
            raise InvalidTransitionError(f"Order {order_id} is already completed")
        if order.disputed:
            return order

        reason = sanitize_input(reason, max_length=1000)
        if not reason:
            raise ValidationError("A dispute reason is required")

        updated = await self.db.set_disputed(order_id, user_id, reason)
        if updated is None:
            current = await self.get_order(order_id)
            if current.is_completed:
                raise InvalidTransitionError(f"Order {order_id} is already completed")
            return current

        logger.warning(f"Dispute opened on order {order_id} by user {user_id}: {reason}")

        other_party = updated.seller_id if user_id == updated.buyer_id else updated.buyer_id
        await self.notify_user(
            other_party,
            "Order disputed",
            f"A dispute was opened on order #{order_id}: {reason}\n"
            f"Funds stay in escrow until an admin resolves it."
        )
        await self._notify_admin(
            "Dispute opened",
            f"Order #{order_id} disputed by user {user_id}.\nReason: {reason}"
        )
        return updated

    async def resolve_dispute(self, order_id: int, admin_id: int, release_to_seller: bool = False) -> Order:
        """
        Clear a dispute (and any delivery-code lockout) on an order.

        Args:
            order_id: Order to resolve
            admin_id: Resolving admin
            release_to_seller: Also complete the order and credit the seller

        Returns:
            The updated order

        Raises:
            InvalidTransitionError: If the order is completed, or a release is
                requested for an unpaid order
        """
        order = await self.get_order(order_id)
        if order.is_completed:
            raise InvalidTransitionError(f"Order {order_id} is already completed")
        if release_to_seller:
            self._require_releasable(order)

        cleared = await self.db.clear_dispute(order_id)
        if cleared is None:
            raise InvalidTransitionError(f"Order {order_id} is already completed")

        logger.info(f"Admin {admin_id} resolved order {order_id} (release={release_to_seller})")

        if not release_to_seller:
            return cleared

        completed = await self.db.complete_order(order_id, RELEASABLE_STATES)
        if completed is None:
            raise InvalidTransitionError(f"Order {order_id} is already completed")

        await self._notify_released(completed)
        return completed

    # ==================== QUERIES ====================

    async def get_order(self, order_id: int) -> Order:
        order = await self.db.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_for_party(self, order_id: int, user_id: int) -> Order:
        order = await self.get_order(order_id)
        if not order.is_party(user_id):
            raise PermissionDeniedError("You are not a party to this order")
        return order

    async def list_buyer_orders(self, buyer_id: int) -> List[Order]:
        return await self.db.list_orders_for_user(buyer_id, as_seller=False)

    async def list_seller_orders(self, seller_id: int) -> List[Order]:
        return await self.db.list_orders_for_user(seller_id, as_seller=True)

    # ==================== NOTIFICATIONS ====================

    async def notify_user(self, user_id: Optional[int], subject: str, body: str) -> None:
        if not self.notifier or user_id is None:
            return
        try:
            user = await self.db.get_user(user_id)
            if user is None or not user.email:
                logger.debug(f"No email for user {user_id}, skipping '{subject}'")
                return
            await self.notifier.send(user.email, subject, body)
        except Exception as e:
            logger.error(f"Failed to notify user {user_id} ({subject}): {e}")

    async def _notify_admin(self, subject: str, body: str) -> None:
        if not self.admin_notifier or not self.config.admin_chat_id:
            return
        try:
            await self.admin_notifier.send(self.config.admin_chat_id, subject, body)
        except Exception as e:
            logger.error(f"Failed to send admin alert ({subject}): {e}")

    async def _notify_released(self, order: Order) -> None:
        currency = self.config.currency
        await self.notify_user(
            order.seller_id,
            "Funds released",
            f"{format_currency(order.seller_amount, currency)} from order #{order.id} "
            f"has been added to your wallet."
        )
        await self.notify_user(
            order.buyer_id,
            "Order completed",
            f"Order #{order.id} is complete. Thank you for shopping!"
        )
