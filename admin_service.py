"""
Admin moderation: bans, appeals, flagged-user review, dispute resolution
and market reference prices.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from config import get_config, Config
from escrow_service import EscrowService
from exceptions import (
    InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError,
)
from models import AccessStatus, AppealStatus, BanAppeal, MarketPrice, Order, User
from utils import sanitize_input, utcnow

logger = logging.getLogger(__name__)

ADMIN_ROLE = 'admin'

# (item_name, min_price, max_price, average_price)
DEFAULT_MARKET_PRICES: List[Tuple[str, int, int, int]] = [
    ('Rice (50kg)', 55000, 75000, 65000),
    ('Beans (Mudu)', 1200, 1800, 1500),
    ('Yam (Large)', 2500, 4000, 3200),
    ('Garri (Paint)', 2000, 3000, 2500),
    ('Palm Oil (Bottle)', 900, 1500, 1200),
    ('Eggs (Crate)', 3500, 4500, 4000),
]


class AdminService:
    """
    Attributes:
        db: Ledger store
        escrow: Escrow state machine, for dispute resolution
        config: Configuration instance
        notifier: Notifies users of moderation decisions (optional)
    """

    def __init__(self, database, escrow: EscrowService, config: Optional[Config] = None, notifier=None):
        self.db = database
        self.escrow = escrow
        self.config = config or get_config()
        self.notifier = notifier

    async def _require_admin(self, admin_id: int) -> User:
        admin = await self.db.get_user(admin_id)
        if admin is None or admin.role != ADMIN_ROLE:
            raise PermissionDeniedError("Admin access required")
        return admin

    async def _get_user(self, user_id: int) -> User:
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def access_status(self, user_id: int) -> AccessStatus:
        """Current access state of a user, with expired bans reading as active."""
        return AccessStatus.from_user(await self._get_user(user_id))

    # ==================== BANS ====================

    async def ban_user(self, admin_id: int, user_id: int, days: Optional[int], reason: str) -> AccessStatus:
        """
        Ban a user for ``days`` days, or permanently when ``days`` is None.

        Raises:
            PermissionDeniedError: If the caller is not an admin
            ValidationError: If ``days`` is not positive
        """
        await self._require_admin(admin_id)
        await self._get_user(user_id)

        if days is not None and days < 1:
            raise ValidationError("Ban length must be at least one day")

        reason = sanitize_input(reason, max_length=500) or 'Banned by admin'
        until = utcnow() + timedelta(days=days) if days is not None else None
        status = AccessStatus.banned(until, reason)

        await self.db.set_access_status(user_id, status)
        logger.warning(f"Admin {admin_id} banned user {user_id}: {status.describe()}")
        return status

    async def unban_user(self, admin_id: int, user_id: int) -> AccessStatus:
        await self._require_admin(admin_id)
        await self._get_user(user_id)

        status = AccessStatus.active()
        await self.db.set_access_status(user_id, status)
        logger.info(f"Admin {admin_id} unbanned user {user_id}")
        return status

    async def list_flagged_users(self, admin_id: int, limit: int = 100) -> List[User]:
        await self._require_admin(admin_id)
        return await self.db.list_flagged_users(limit)

    # ==================== APPEALS ====================

    async def submit_appeal(self, user_id: int, message: str) -> BanAppeal:
        """
        File a ban appeal.

        Raises:
            InvalidTransitionError: If the user is not banned or already has an
                open appeal
            ValidationError: If the message is empty
        """
        user = await self._get_user(user_id)
        if AccessStatus.from_user(user).is_active:
            raise InvalidTransitionError("Only banned accounts can appeal")

        message = sanitize_input(message, max_length=2000)
        if not message:
            raise ValidationError("Appeal message is required")

        if await self.db.get_open_appeal(user_id) is not None:
            raise InvalidTransitionError("You already have an open appeal")

        appeal = await self.db.create_appeal(user_id, message)
        logger.info(f"User {user_id} submitted appeal {appeal.id}")
        return appeal

    async def list_open_appeals(self, admin_id: int) -> List[BanAppeal]:
        await self._require_admin(admin_id)
        return await self.db.list_open_appeals()

    async def resolve_appeal(self, admin_id: int, appeal_id: int, accept: bool) -> BanAppeal:
        """
        Accept (and unban) or reject an open appeal.

        Raises:
            NotFoundError: If the appeal does not exist
            InvalidTransitionError: If the appeal was already resolved
        """
        await self._require_admin(admin_id)

        appeal = await self.db.get_appeal(appeal_id)
        if appeal is None:
            raise NotFoundError("Appeal", appeal_id)

        decision = AppealStatus.ACCEPTED if accept else AppealStatus.REJECTED
        resolved = await self.db.resolve_appeal(appeal_id, decision)
        if resolved is None:
            raise InvalidTransitionError(f"Appeal {appeal_id} is already {appeal.status.value}")

        if accept:
            await self.db.set_access_status(appeal.user_id, AccessStatus.active())

        logger.info(f"Admin {admin_id} {decision.value} appeal {appeal_id} (user {appeal.user_id})")
        await self._notify_appeal(resolved)
        return resolved

    async def _notify_appeal(self, appeal: BanAppeal) -> None:
        if not self.notifier:
            return
        try:
            user = await self.db.get_user(appeal.user_id)
            if user is None or not user.email:
                return
            if appeal.status == AppealStatus.ACCEPTED:
                body = "Your appeal was accepted and your account has been restored."
            else:
                body = "Your appeal was reviewed and rejected."
            await self.notifier.send(user.email, "Ban appeal decision", body)
        except Exception as e:
            logger.error(f"Failed to notify user {appeal.user_id} of appeal decision: {e}")

    # ==================== ORDERS ====================

    async def resolve_dispute(self, admin_id: int, order_id: int, release_to_seller: bool) -> Order:
        await self._require_admin(admin_id)
        return await self.escrow.resolve_dispute(order_id, admin_id, release_to_seller)

    # ==================== MARKET PRICES ====================

    async def seed_market_prices(
        self,
        prices: Optional[Iterable[Tuple[str, int, int, int]]] = None
    ) -> List[MarketPrice]:
        """
        Upsert market reference prices (defaults to ``DEFAULT_MARKET_PRICES``).

        Raises:
            ValidationError: If an entry has min > max or an average outside them
        """
        seeded = []
        for item_name, low, high, average in (prices or DEFAULT_MARKET_PRICES):
            low, high, average = Decimal(str(low)), Decimal(str(high)), Decimal(str(average))
            if not (Decimal('0') < low <= average <= high):
                raise ValidationError(f"Inconsistent reference prices for {item_name}")
            seeded.append(await self.db.upsert_market_price(item_name, low, high, average))

        logger.info(f"Seeded {len(seeded)} market reference prices")
        return seeded
