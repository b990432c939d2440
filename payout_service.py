"""
Wallet withdrawals to the user's bank account.

The wallet is debited with a conditional update before the transfer is sent.
The amount is credited back only when the transfer definitely did not happen:
Paystack refused it, or a status lookup after a timeout reports it failed.
When the outcome cannot be established the debit stays and an admin is
alerted with the transfer reference.
"""

import logging
from typing import Any, Dict, Optional

from config import get_config, Config
from exceptions import (
    AccessDeniedError, NotFoundError, PayoutError, PayoutUnconfirmedError, ValidationError,
)
from models import AccessStatus
from paystack_service import PaystackError, TRANSFER_FAILED_STATUSES, TRANSFER_SENT_STATUSES
from utils import format_currency, generate_reference, mask_sensitive_data, validate_amount

logger = logging.getLogger(__name__)


class PayoutService:
    """
    Attributes:
        db: Ledger store
        gateway: Payment gateway adapter (``create_recipient``/``transfer``)
        config: Configuration instance
        admin_notifier: Receives alerts about unconfirmed transfers (optional)
    """

    def __init__(self, database, gateway, config: Optional[Config] = None, admin_notifier=None):
        self.db = database
        self.gateway = gateway
        self.config = config or get_config()
        self.admin_notifier = admin_notifier

    async def withdraw(self, user_id: int, amount) -> Dict[str, Any]:
        """
        Withdraw wallet funds to the user's registered bank account.

        Args:
            user_id: Withdrawing user
            amount: Amount in naira

        Returns:
            Dict with ``amount``, ``recipient_code``, the transfer ``reference``
            and the gateway ``transfer`` data

        Raises:
            NotFoundError: If the user does not exist
            AccessDeniedError: If the user is banned
            ValidationError: If the amount is invalid or no bank details are set
            PayoutError: If the balance is insufficient or the transfer failed
            PayoutUnconfirmedError: If the transfer outcome is unknown; the
                wallet stays debited
        """
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        access = AccessStatus.from_user(user)
        if not access.is_active:
            raise AccessDeniedError(user_id, access.describe())

        is_valid, amount, error = validate_amount(amount, min_amount=self.config.min_withdrawal_amount)
        if not is_valid:
            raise ValidationError(error)

        if not user.has_bank_details:
            raise ValidationError("Add your bank details before withdrawing")

        recipient_code = user.payout_recipient_code
        if not recipient_code:
            try:
                recipient_code = await self.gateway.create_recipient(
                    user.username, user.account_number, user.bank_code
                )
            except PaystackError as e:
                logger.error(f"Could not register payout account for user {user_id}: {e}")
                raise PayoutError(f"Could not verify your bank account: {e}") from e
            await self.db.set_payout_recipient(user_id, recipient_code)
            logger.info(
                f"Registered payout recipient for user {user_id} "
                f"({mask_sensitive_data(user.account_number)})"
            )

        if not await self.db.debit_wallet(user_id, amount):
            raise PayoutError(
                f"Insufficient balance to withdraw {format_currency(amount, self.config.currency)}"
            )

        reference = generate_reference('payout').lower()
        try:
            transfer = await self.gateway.transfer(recipient_code, amount, reference, 'Seller Payout')
        except PaystackError as e:
            if e.rejected:
                logger.error(f"Transfer {reference} for user {user_id} rejected, refunding wallet: {e}")
                await self.db.credit_wallet(user_id, amount)
                raise PayoutError(f"Transfer failed: {e}") from e

            logger.warning(f"Transfer {reference} for user {user_id} got no answer ({e}), checking status")
            transfer_status = await self._lookup_transfer(reference)

            if transfer_status in TRANSFER_FAILED_STATUSES:
                logger.error(f"Transfer {reference} reported {transfer_status}, refunding wallet")
                await self.db.credit_wallet(user_id, amount)
                raise PayoutError(f"Transfer failed: {e}") from e

            if transfer_status not in TRANSFER_SENT_STATUSES:
                detail = f"status {transfer_status}" if transfer_status else str(e)
                await self.notify_admin(
                    "Unconfirmed payout",
                    f"Transfer {reference} of {format_currency(amount, self.config.currency)} "
                    f"for user {user_id} could not be confirmed ({detail}).\n"
                    "The wallet is still debited. Verify the transfer and re-credit if it failed."
                )
                raise PayoutUnconfirmedError(reference, detail) from e

            transfer = {'reference': reference, 'status': transfer_status}

        logger.info(f"User {user_id} withdrew {amount} (transfer {reference})")
        return {
            'amount': amount,
            'recipient_code': recipient_code,
            'reference': reference,
            'transfer': transfer,
        }

    async def _lookup_transfer(self, reference: str) -> Optional[str]:
        """Transfer status from Paystack, or None when it cannot be established."""
        try:
            return await self.gateway.verify_transfer(reference)
        except PaystackError as e:
            logger.error(f"Could not look up transfer {reference}: {e}")
            return None

    async def notify_admin(self, subject: str, body: str) -> None:
        if not self.admin_notifier or not self.config.admin_chat_id:
            logger.error(f"{subject}: {body}")
            return
        try:
            await self.admin_notifier.send(self.config.admin_chat_id, subject, body)
        except Exception as e:
            logger.error(f"Failed to send admin alert ({subject}): {e}")
