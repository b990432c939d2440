"""
Heuristic fraud engine gating seller actions.

Rules:
    1. Price anomaly: statistical bounds around the market reference price
    2. Spam guard: a second listing within a few seconds of the last one
    3. Keyword guard: scam phrases in the title or description
    4. Bank collision: payout account already registered to another user
    5. New-account velocity: too many listings from an account under a day old

Every rule fails open: an unexpected error inside a rule is logged and the
action is allowed.
"""

import logging
import statistics
import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from config import Config, get_config
from models import AccessStatus, MarketPrice, User
from utils import format_currency, utcnow

logger = logging.getLogger(__name__)


BLACKLIST_KEYWORDS = [
    "western union", "moneygram", "crypto payment", "whatsapp only",
    "dm for price", "logistics fee", "delivery fee only", "pay before delivery",
    "customs fee", "bitcoin",
]

# Suspicion-score increments by rule severity
SEVERE_FLAG = 20
MINOR_FLAG = 10

PRICE_BAN_DAYS = 7
KEYWORD_BAN_DAYS = 3

MIN_SAMPLE_SIZE = 5
MIN_RELATIVE_SPREAD = 0.1
SIGMA_MULTIPLIER = 2.5
FALLBACK_LOW_FACTOR = 0.5
FALLBACK_HIGH_FACTOR = 2.0
PRICE_FLOOR = 100.0

NEW_ACCOUNT_AGE = timedelta(hours=24)


@dataclass
class FraudVerdict:
    """Outcome of one rule (or of a whole evaluation)."""
    is_fraud: bool
    rule: Optional[str] = None
    reason: Optional[str] = None
    banned: bool = False
    ban_days: Optional[int] = None

    @classmethod
    def clear(cls) -> 'FraudVerdict':
        return cls(is_fraud=False)


class RateLimiter(Protocol):
    """Tracks when each seller last posted."""

    def seconds_since_last(self, key: int) -> Optional[float]:
        ...

    def record(self, key: int) -> None:
        ...


class InMemoryRateLimiter:
    """
    Per-process last-post map.

    Lost on restart and not shared between workers, which is acceptable for
    a spam heuristic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last_post: Dict[int, float] = {}

    def seconds_since_last(self, key: int) -> Optional[float]:
        last = self._last_post.get(key)
        if last is None:
            return None
        return self._clock() - last

    def record(self, key: int) -> None:
        self._last_post[key] = self._clock()


def match_market_item(title: str, items: List[MarketPrice]) -> Optional[MarketPrice]:
    """
    Pick the reference item whose lowercased name is the longest substring of
    the lowercased title. On equal lengths the first item (store order) wins.
    """
    lowered = (title or '').lower()
    best: Optional[MarketPrice] = None
    for item in items:
        name = item.item_name.lower()
        if name and name in lowered:
            if best is None or len(name) > len(best.item_name):
                best = item
    return best


def price_bounds(reference: MarketPrice, history: List[Decimal]) -> Tuple[float, float]:
    """
    Compute the accepted price range for a reference item.

    The sample is the historical prices plus the reference average, min and
    max. With fewer than five points, or a spread under 10% of the mean, the
    range falls back to half the reference minimum up to twice the reference
    maximum. Otherwise it is mean +/- 2.5 population standard deviations,
    with the lower bound never below 100.
    """
    sample = [float(p) for p in history]
    sample.extend([
        float(reference.average_price),
        float(reference.min_price),
        float(reference.max_price),
    ])

    mean = statistics.fmean(sample)
    sigma = statistics.pstdev(sample)

    if len(sample) < MIN_SAMPLE_SIZE or sigma < MIN_RELATIVE_SPREAD * mean:
        return (
            float(reference.min_price) * FALLBACK_LOW_FACTOR,
            float(reference.max_price) * FALLBACK_HIGH_FACTOR,
        )

    low = max(mean - SIGMA_MULTIPLIER * sigma, PRICE_FLOOR)
    return low, mean + SIGMA_MULTIPLIER * sigma


class FraudEngine:
    """
    Evaluates listings and bank-detail changes, flagging or banning the
    offending user in the ledger when a rule fires.
    """

    def __init__(self, db, rate_limiter: Optional[RateLimiter] = None,
                 config: Optional[Config] = None):
        self.db = db
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self.config = config or get_config()

    # ==================== SIDE EFFECTS ====================

    async def flag_user(self, user: User, increment: int, reason: str) -> None:
        logger.warning(f"Flagging user {user.id} (+{increment}): {reason}")
        await self.db.flag_user(user.id, increment)

    async def ban_user(self, user: User, days: int, reason: str) -> None:
        until = utcnow() + timedelta(days=days)
        logger.warning(f"Banning user {user.id} for {days} days: {reason}")
        await self.db.set_access_status(user.id, AccessStatus.banned(until, reason))

    # ==================== RULES ====================

    async def detect_price_anomaly(self, user: User, price: Decimal, title: str) -> FraudVerdict:
        reference = match_market_item(title, await self.db.list_market_prices())
        if reference is None:
            return FraudVerdict.clear()

        history = await self.db.get_price_history(
            reference.item_name.lower(), self.config.price_history_limit
        )
        low, high = price_bounds(reference, history)
        submitted = float(price)
        currency = self.config.currency

        if submitted < low:
            reason = (
                f"Price {format_currency(price, currency)} for {reference.item_name} is below "
                f"the expected minimum of {format_currency(round(low, 2), currency)}"
            )
        elif submitted > high:
            reason = (
                f"Price {format_currency(price, currency)} for {reference.item_name} is above "
                f"the expected maximum of {format_currency(round(high, 2), currency)}"
            )
        else:
            return FraudVerdict.clear()

        await self.flag_user(user, SEVERE_FLAG, reason)
        await self.ban_user(user, PRICE_BAN_DAYS, reason)
        return FraudVerdict(True, 'price_anomaly', reason, banned=True, ban_days=PRICE_BAN_DAYS)

    async def check_spamming(self, user: User) -> FraudVerdict:
        elapsed = self.rate_limiter.seconds_since_last(user.id)
        if elapsed is None or elapsed >= self.config.spam_window_seconds:
            return FraudVerdict.clear()

        reason = (
            f"Posting too fast: {elapsed:.1f}s since the last listing "
            f"(minimum {self.config.spam_window_seconds:g}s)"
        )
        await self.flag_user(user, MINOR_FLAG, reason)
        return FraudVerdict(True, 'spam', reason)

    async def check_description_content(self, user: User, title: str, description: str) -> FraudVerdict:
        content = f"{title or ''} {description or ''}".lower()
        for phrase in BLACKLIST_KEYWORDS:
            if phrase in content:
                reason = f'Used blacklisted phrase: "{phrase}"'
                await self.flag_user(user, SEVERE_FLAG, reason)
                await self.ban_user(user, KEYWORD_BAN_DAYS, reason)
                return FraudVerdict(True, 'keyword', reason, banned=True, ban_days=KEYWORD_BAN_DAYS)
        return FraudVerdict.clear()

    async def check_bank_details(self, user: User, account_number: str) -> FraudVerdict:
        other = await self.db.find_user_by_account_number(account_number, exclude_user_id=user.id)
        if other is None:
            return FraudVerdict.clear()

        reason = f"Bank account already registered to user {other.username} (possible multi-accounting)"
        await self.flag_user(user, SEVERE_FLAG, reason)
        return FraudVerdict(True, 'bank_collision', reason)

    async def check_account_velocity(self, user: User) -> FraudVerdict:
        if user.created_at is None:
            return FraudVerdict.clear()
        if utcnow() - user.created_at >= NEW_ACCOUNT_AGE:
            return FraudVerdict.clear()

        limit = self.config.new_account_listing_limit
        count = await self.db.count_products_by_seller(user.id)
        if count < limit:
            return FraudVerdict.clear()

        reason = f"New account listing limit reached ({count} of {limit} in the first 24 hours)"
        await self.flag_user(user, MINOR_FLAG, reason)
        return FraudVerdict(True, 'velocity', reason)

    # ==================== EVALUATION ====================

    async def _run_rule(self, name: str, rule) -> FraudVerdict:
        """Await a rule, allowing the action if the rule itself fails."""
        try:
            return await rule
        except Exception as e:
            logger.error(f"Fraud rule '{name}' failed, allowing action: {e}", exc_info=True)
            return FraudVerdict.clear()

    async def evaluate_listing(self, user: User, title: str, description: str,
                               price: Decimal) -> FraudVerdict:
        """
        Run the listing rules in order, stopping at the first positive verdict.

        Args:
            user: The seller creating the listing
            title: Listing title
            description: Listing description
            price: Submitted price

        Returns:
            The first fraud verdict, or a clear verdict
        """
        checks = [
            ('spam', lambda: self.check_spamming(user)),
            ('keyword', lambda: self.check_description_content(user, title, description)),
            ('velocity', lambda: self.check_account_velocity(user)),
            ('price_anomaly', lambda: self.detect_price_anomaly(user, price, title)),
        ]
        for name, check in checks:
            verdict = await self._run_rule(name, check())
            if verdict.is_fraud:
                return verdict
        return FraudVerdict.clear()

    async def evaluate_listing_edit(self, user: User, title: str, description: str,
                                    price: Decimal) -> FraudVerdict:
        """Content and price rules for an edited listing, applied to its merged fields."""
        checks = [
            ('keyword', lambda: self.check_description_content(user, title, description)),
            ('price_anomaly', lambda: self.detect_price_anomaly(user, price, title)),
        ]
        for name, check in checks:
            verdict = await self._run_rule(name, check())
            if verdict.is_fraud:
                return verdict
        return FraudVerdict.clear()

    async def evaluate_bank_update(self, user: User, account_number: str) -> FraudVerdict:
        return await self._run_rule('bank_collision', self.check_bank_details(user, account_number))

    def record_listing(self, user_id: int) -> None:
        """Remember an accepted listing for the spam guard."""
        self.rate_limiter.record(user_id)
