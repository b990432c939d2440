"""
Typed row models for the ledger store.

Every row read from PostgreSQL is turned into one of these models by
``LedgerDatabase`` before any service sees it. Booleans and timestamps are
normalised here, once: legacy rows carry ``0``/``1``, ``"0"``/``"1"`` or
``"true"`` flags and ban expiries stored as epoch milliseconds, and the
services must never re-derive truthiness from those raw values.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class OrderStatus(str, Enum):
    """Order lifecycle states, in the only order they may be visited."""
    PENDING = "pending"                              # Checkout started, not paid
    PAID_PENDING_DELIVERY = "paid_pending_delivery"  # Paid, held in escrow
    SHIPPED = "shipped"                              # Seller marked delivered
    COMPLETED = "completed"                          # Funds released to seller


ORDER_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.PAID_PENDING_DELIVERY,
    OrderStatus.SHIPPED,
    OrderStatus.COMPLETED,
]


class TopupStatus(str, Enum):
    PENDING = "pending"
    CREDITED = "credited"


class AppealStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Anything above this is taken to be epoch milliseconds (year ~5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000


def coerce_bool(value: Any) -> bool:
    """Normalise the loose boolean encodings found in the users/orders tables."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 't', 'yes', 'y')
    return bool(value)


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Normalise a stored timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings,
    and epoch seconds or milliseconds as numbers or digit strings.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip('-').isdigit():
            value = int(stripped)
        else:
            parsed = datetime.fromisoformat(stripped.replace('Z', '+00:00'))
            return coerce_datetime(parsed)
    if isinstance(value, (int, float, Decimal)):
        seconds = float(value)
        if abs(seconds) >= _EPOCH_MS_THRESHOLD:
            seconds = seconds / 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class LedgerRow(BaseModel):
    """Base for rows mapped out of asyncpg records."""

    model_config = ConfigDict(extra='ignore')

    @classmethod
    def from_record(cls, record: Any):
        """Build a model from an asyncpg Record (or mapping); None stays None."""
        if record is None:
            return None
        return cls.model_validate(dict(record))


class User(LedgerRow):
    id: int
    username: str
    email: Optional[str] = None
    role: str = 'buyer'
    created_at: Optional[datetime] = None

    wallet_balance: Decimal = Decimal('0')

    suspicion_score: int = 0
    is_flagged: bool = False
    is_banned: bool = False
    ban_expires: Optional[datetime] = None
    ban_reason: Optional[str] = None

    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_code: Optional[str] = None
    payout_recipient_code: Optional[str] = None

    @field_validator('is_flagged', 'is_banned', mode='before')
    @classmethod
    def _bools(cls, value: Any) -> bool:
        return coerce_bool(value)

    @field_validator('created_at', 'ban_expires', mode='before')
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)

    @field_validator('suspicion_score', mode='before')
    @classmethod
    def _score(cls, value: Any) -> int:
        return int(value or 0)

    @property
    def has_bank_details(self) -> bool:
        return bool(self.account_number and self.bank_code)


class Product(LedgerRow):
    id: int
    title: str
    description: str = ''
    price: Decimal
    category: Optional[str] = None
    seller_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @field_validator('description', mode='before')
    @classmethod
    def _description(cls, value: Any) -> str:
        return value or ''

    @field_validator('created_at', mode='before')
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)


class Order(LedgerRow):
    id: int
    buyer_id: Optional[int] = None
    seller_id: Optional[int] = None
    product_id: Optional[int] = None

    amount: Decimal
    service_fee: Decimal = Decimal('0')
    seller_amount: Decimal

    status: OrderStatus
    buyer_confirmed: bool = False
    seller_confirmed: bool = False
    escrow_released: bool = False

    delivery_code: str
    code_attempts: int = 0
    payment_reference: Optional[str] = None

    disputed: bool = False
    dispute_reason: Optional[str] = None
    disputed_by: Optional[int] = None

    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    code_confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator('buyer_confirmed', 'seller_confirmed', 'escrow_released', 'disputed',
                     mode='before')
    @classmethod
    def _bools(cls, value: Any) -> bool:
        return coerce_bool(value)

    @field_validator('created_at', 'paid_at', 'delivered_at', 'code_confirmed_at',
                     'completed_at', mode='before')
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)

    @field_validator('delivery_code', mode='before')
    @classmethod
    def _code(cls, value: Any) -> str:
        # Older rows stored the code as an integer, dropping leading zeros
        if isinstance(value, int):
            return f"{value:06d}"
        return str(value)

    @field_validator('code_attempts', mode='before')
    @classmethod
    def _attempts(cls, value: Any) -> int:
        return int(value or 0)

    @property
    def is_completed(self) -> bool:
        return self.status == OrderStatus.COMPLETED

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def claim_available_at(self, window: timedelta) -> Optional[datetime]:
        if self.delivered_at is None:
            return None
        return self.delivered_at + window


class MarketPrice(LedgerRow):
    id: Optional[int] = None
    item_name: str
    min_price: Decimal
    max_price: Decimal
    average_price: Decimal


class TopupIntent(LedgerRow):
    reference: str
    user_id: int
    amount: Decimal
    status: TopupStatus = TopupStatus.PENDING
    created_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    @field_validator('created_at', 'credited_at', mode='before')
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)


class BanAppeal(LedgerRow):
    id: int
    user_id: int
    message: str
    status: AppealStatus = AppealStatus.OPEN
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @field_validator('created_at', 'resolved_at', mode='before')
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)


class AccessState(str, Enum):
    ACTIVE = "active"
    BANNED_UNTIL = "banned_until"
    BANNED_PERMANENT = "banned_permanent"


@dataclass(frozen=True)
class AccessStatus:
    """
    Canonical view of whether a user may log in and list.

    Computed from ``is_banned``/``ban_expires`` on every check, so a ban whose
    expiry has passed reads as active without anyone clearing the columns.
    The legacy ``is_blocked`` column is derived from this value when bans are
    written and is never read back.
    """

    state: AccessState
    until: Optional[datetime] = None
    reason: Optional[str] = None

    @classmethod
    def active(cls) -> 'AccessStatus':
        return cls(AccessState.ACTIVE)

    @classmethod
    def banned(cls, until: Optional[datetime], reason: Optional[str] = None) -> 'AccessStatus':
        if until is None:
            return cls(AccessState.BANNED_PERMANENT, None, reason)
        return cls(AccessState.BANNED_UNTIL, until, reason)

    @classmethod
    def from_user(cls, user: User, now: Optional[datetime] = None) -> 'AccessStatus':
        now = now or datetime.now(timezone.utc)
        if not user.is_banned:
            return cls.active()
        if user.ban_expires is None:
            return cls(AccessState.BANNED_PERMANENT, None, user.ban_reason)
        if user.ban_expires <= now:
            return cls.active()
        return cls(AccessState.BANNED_UNTIL, user.ban_expires, user.ban_reason)

    @property
    def is_active(self) -> bool:
        return self.state == AccessState.ACTIVE

    @property
    def legacy_blocked(self) -> bool:
        """Value written to the legacy ``is_blocked`` column."""
        return not self.is_active

    def describe(self) -> str:
        if self.state == AccessState.ACTIVE:
            return "active"
        if self.state == AccessState.BANNED_PERMANENT:
            return f"banned permanently ({self.reason or 'no reason given'})"
        return (
            f"banned until {self.until.strftime('%Y-%m-%d %H:%M UTC')} "
            f"({self.reason or 'no reason given'})"
        )
