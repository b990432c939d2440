"""
PostgreSQL ledger store for the campus marketplace.

This module owns every read and write against the relational store: users
(wallet, ban and suspicion state), products, orders, market reference
prices, wallet top-up intents and ban appeals.

State transitions are expressed as conditional updates
(``WHERE status = <expected>``) and relative increments so that concurrent
requests cannot resurrect a completed order, double-credit a wallet or lose
a suspicion-score increment. Rows leave this module only as typed models
from ``models.py``.

Dependencies:
    - asyncpg: For async PostgreSQL operations
"""

import asyncpg
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Sequence, AsyncIterator

from models import (
    AccessStatus, AppealStatus, BanAppeal, MarketPrice, Order, OrderStatus,
    Product, TopupIntent, TopupStatus, User,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


class IntegrityError(DatabaseError):
    """Raised when a write violates a unique/foreign-key/check constraint."""
    pass


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username VARCHAR(100) UNIQUE NOT NULL,
        email VARCHAR(255) UNIQUE,
        role VARCHAR(20) NOT NULL DEFAULT 'buyer',
        wallet_balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
        suspicion_score INTEGER NOT NULL DEFAULT 0,
        is_flagged BOOLEAN NOT NULL DEFAULT FALSE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        ban_expires TIMESTAMPTZ,
        ban_reason TEXT,
        bank_name VARCHAR(100),
        account_number VARCHAR(20) UNIQUE,
        bank_code VARCHAR(10),
        payout_recipient_code VARCHAR(100),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT non_negative_wallet CHECK (wallet_balance >= 0),
        CONSTRAINT non_negative_suspicion CHECK (suspicion_score >= 0)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id SERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        price NUMERIC(14, 2) NOT NULL,
        category VARCHAR(100),
        seller_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT positive_price CHECK (price > 0)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        buyer_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
        seller_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
        product_id INTEGER REFERENCES products(id) ON DELETE SET NULL,
        amount NUMERIC(14, 2) NOT NULL,
        service_fee NUMERIC(14, 2) NOT NULL DEFAULT 0,
        seller_amount NUMERIC(14, 2) NOT NULL,
        status VARCHAR(30) NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending', 'paid_pending_delivery', 'shipped', 'completed')
        ),
        buyer_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        seller_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        escrow_released BOOLEAN NOT NULL DEFAULT FALSE,
        delivery_code CHAR(6) NOT NULL,
        code_attempts INTEGER NOT NULL DEFAULT 0,
        payment_reference VARCHAR(100) UNIQUE NOT NULL,
        disputed BOOLEAN NOT NULL DEFAULT FALSE,
        dispute_reason TEXT,
        disputed_by INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        paid_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ,
        code_confirmed_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        CONSTRAINT positive_amount CHECK (amount > 0),
        CONSTRAINT consistent_split CHECK (seller_amount = amount - service_fee)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS market_prices (
        id SERIAL PRIMARY KEY,
        item_name TEXT UNIQUE NOT NULL,
        min_price NUMERIC(14, 2) NOT NULL,
        max_price NUMERIC(14, 2) NOT NULL,
        average_price NUMERIC(14, 2) NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS topup_intents (
        reference VARCHAR(100) PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        amount NUMERIC(14, 2) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'credited')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        credited_at TIMESTAMPTZ
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ban_appeals (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        message TEXT NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'accepted', 'rejected')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        resolved_at TIMESTAMPTZ
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_products_seller ON products(seller_id);
    CREATE INDEX IF NOT EXISTS idx_products_title_lower ON products(LOWER(title));
    CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id);
    CREATE INDEX IF NOT EXISTS idx_orders_seller ON orders(seller_id);
    CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
    CREATE INDEX IF NOT EXISTS idx_users_flagged ON users(is_flagged) WHERE is_flagged;
    CREATE INDEX IF NOT EXISTS idx_ban_appeals_user ON ban_appeals(user_id);
    """,
]


class LedgerDatabase:
    """
    Ledger store backed by an asyncpg connection pool.

    Every method acquires its own pooled connection, so unrelated requests
    never wait on each other; only the completion/credit and top-up paths
    open an explicit transaction.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(
        self,
        connection_string: str,
        min_size: int = 2,
        max_size: int = 10
    ):
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60
            )
            logger.info("Database connection pool created successfully")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}")

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, translating driver errors."""
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")

        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.IntegrityConstraintViolationError as e:
            logger.warning(f"Constraint violated during {operation}: {e}")
            raise IntegrityError(f"{operation} violated a constraint: {e}") from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database error during {operation}: {e}")
            raise DatabaseError(f"{operation} failed: {e}") from e

    async def init_schema(self) -> None:
        """
        Create all tables and indexes if they don't exist.

        Raises:
            DatabaseError: If table creation fails
        """
        async with self._connection("schema initialization") as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("Ledger schema created/verified successfully")

    async def ping(self) -> bool:
        async with self._connection("ping") as conn:
            return await conn.fetchval("SELECT 1") == 1

    # ==================== USERS ====================

    async def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        role: str = 'buyer',
        created_at: Optional[datetime] = None
    ) -> User:
        async with self._connection("create user") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO users (username, email, role, created_at)
                VALUES ($1, $2, $3, COALESCE($4, NOW()))
                RETURNING *
                """,
                username, email, role, created_at
            )
        logger.info(f"Created user {row['id']} ({username})")
        return User.from_record(row)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._connection("get user") as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return User.from_record(row)

    async def find_user_by_account_number(
        self,
        account_number: str,
        exclude_user_id: Optional[int] = None
    ) -> Optional[User]:
        """Find another user already holding this payout account number."""
        async with self._connection("find user by account number") as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM users
                WHERE account_number = $1
                  AND ($2::integer IS NULL OR id <> $2)
                ORDER BY id
                LIMIT 1
                """,
                account_number, exclude_user_id
            )
        return User.from_record(row)

    async def flag_user(self, user_id: int, increment: int) -> bool:
        """Mark a user flagged and add to their suspicion score in one relative update."""
        async with self._connection("flag user") as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET is_flagged = TRUE,
                    suspicion_score = suspicion_score + $2
                WHERE id = $1
                """,
                user_id, increment
            )
        return result == "UPDATE 1"

    async def set_access_status(self, user_id: int, status: AccessStatus) -> bool:
        """
        Persist a ban or unban.

        The legacy ``is_blocked`` column is written from the same value so the
        two can never drift.
        """
        async with self._connection("set access status") as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET is_banned = $2,
                    ban_expires = $3,
                    ban_reason = $4,
                    is_blocked = $5
                WHERE id = $1
                """,
                user_id,
                not status.is_active,
                status.until,
                status.reason,
                status.legacy_blocked
            )
        return result == "UPDATE 1"

    async def list_flagged_users(self, limit: int = 100) -> List[User]:
        async with self._connection("list flagged users") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM users
                WHERE is_flagged = TRUE
                ORDER BY suspicion_score DESC, id
                LIMIT $1
                """,
                limit
            )
        return [User.from_record(row) for row in rows]

    async def update_bank_details(
        self,
        user_id: int,
        bank_name: str,
        account_number: str,
        bank_code: str
    ) -> Optional[User]:
        """
        Store payout bank details.

        The cached payout recipient is dropped whenever the account changes,
        so the next withdrawal registers the new account with the gateway.
        """
        async with self._connection("update bank details") as conn:
            row = await conn.fetchrow(
                """
                UPDATE users
                SET bank_name = $2,
                    account_number = $3,
                    bank_code = $4,
                    payout_recipient_code = CASE
                        WHEN account_number IS DISTINCT FROM $3
                          OR bank_code IS DISTINCT FROM $4
                        THEN NULL
                        ELSE payout_recipient_code
                    END
                WHERE id = $1
                RETURNING *
                """,
                user_id, bank_name, account_number, bank_code
            )
        return User.from_record(row)

    async def set_payout_recipient(self, user_id: int, recipient_code: str) -> bool:
        async with self._connection("set payout recipient") as conn:
            result = await conn.execute(
                "UPDATE users SET payout_recipient_code = $2 WHERE id = $1",
                user_id, recipient_code
            )
        return result == "UPDATE 1"

    async def credit_wallet(self, user_id: int, amount: Decimal) -> bool:
        async with self._connection("credit wallet") as conn:
            result = await conn.execute(
                "UPDATE users SET wallet_balance = wallet_balance + $2 WHERE id = $1",
                user_id, amount
            )
        return result == "UPDATE 1"

    async def debit_wallet(self, user_id: int, amount: Decimal) -> bool:
        """Debit only if the balance covers the amount; False otherwise."""
        async with self._connection("debit wallet") as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET wallet_balance = wallet_balance - $2
                WHERE id = $1 AND wallet_balance >= $2
                """,
                user_id, amount
            )
        return result == "UPDATE 1"

    # ==================== PRODUCTS ====================

    async def create_product(
        self,
        seller_id: int,
        title: str,
        description: str,
        price: Decimal,
        category: Optional[str] = None
    ) -> Product:
        async with self._connection("create product") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO products (seller_id, title, description, price, category)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                seller_id, title, description, price, category
            )
        return Product.from_record(row)

    async def get_product(self, product_id: int) -> Optional[Product]:
        async with self._connection("get product") as conn:
            row = await conn.fetchrow("SELECT * FROM products WHERE id = $1", product_id)
        return Product.from_record(row)

    async def update_product(
        self,
        product_id: int,
        seller_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        price: Optional[Decimal] = None,
        category: Optional[str] = None
    ) -> Optional[Product]:
        """Edit a product; only rows owned by ``seller_id`` are touched."""
        async with self._connection("update product") as conn:
            row = await conn.fetchrow(
                """
                UPDATE products
                SET title = COALESCE($3, title),
                    description = COALESCE($4, description),
                    price = COALESCE($5, price),
                    category = COALESCE($6, category)
                WHERE id = $1 AND seller_id = $2
                RETURNING *
                """,
                product_id, seller_id, title, description, price, category
            )
        return Product.from_record(row)

    async def delete_product(self, product_id: int, seller_id: int) -> bool:
        async with self._connection("delete product") as conn:
            result = await conn.execute(
                "DELETE FROM products WHERE id = $1 AND seller_id = $2",
                product_id, seller_id
            )
        return result == "DELETE 1"

    async def count_products_by_seller(self, seller_id: int) -> int:
        async with self._connection("count products") as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM products WHERE seller_id = $1",
                seller_id
            )
        return int(count or 0)

    async def get_price_history(self, item_name: str, limit: int = 50) -> List[Decimal]:
        """Most recent prices of products whose title contains ``item_name``."""
        async with self._connection("get price history") as conn:
            rows = await conn.fetch(
                """
                SELECT price FROM products
                WHERE POSITION(LOWER($1) IN LOWER(title)) > 0
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                item_name, limit
            )
        return [Decimal(row['price']) for row in rows]

    # ==================== MARKET PRICES ====================

    async def list_market_prices(self) -> List[MarketPrice]:
        async with self._connection("list market prices") as conn:
            rows = await conn.fetch("SELECT * FROM market_prices ORDER BY id")
        return [MarketPrice.from_record(row) for row in rows]

    async def upsert_market_price(
        self,
        item_name: str,
        min_price: Decimal,
        max_price: Decimal,
        average_price: Decimal
    ) -> MarketPrice:
        async with self._connection("upsert market price") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO market_prices (item_name, min_price, max_price, average_price)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (item_name) DO UPDATE SET
                    min_price = EXCLUDED.min_price,
                    max_price = EXCLUDED.max_price,
                    average_price = EXCLUDED.average_price
                RETURNING *
                """,
                item_name, min_price, max_price, average_price
            )
        return MarketPrice.from_record(row)

    # ==================== ORDERS ====================

    async def create_order(
        self,
        buyer_id: int,
        seller_id: int,
        product_id: int,
        amount: Decimal,
        service_fee: Decimal,
        seller_amount: Decimal,
        delivery_code: str,
        payment_reference: str
    ) -> Order:
        async with self._connection("create order") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO orders
                (buyer_id, seller_id, product_id, amount, service_fee, seller_amount,
                 delivery_code, payment_reference, status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'pending')
                RETURNING *
                """,
                buyer_id, seller_id, product_id, amount, service_fee, seller_amount,
                delivery_code, payment_reference
            )
        logger.info(f"Order {row['id']} created with reference {payment_reference}")
        return Order.from_record(row)

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self._connection("get order") as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return Order.from_record(row)

    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        async with self._connection("get order by reference") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM orders WHERE payment_reference = $1",
                reference
            )
        return Order.from_record(row)

    async def list_orders_for_user(self, user_id: int, as_seller: bool = False) -> List[Order]:
        column = "seller_id" if as_seller else "buyer_id"
        async with self._connection("list orders") as conn:
            rows = await conn.fetch(
                f"SELECT * FROM orders WHERE {column} = $1 ORDER BY created_at DESC, id DESC",
                user_id
            )
        return [Order.from_record(row) for row in rows]

    async def mark_order_paid(self, reference: str) -> Optional[Order]:
        """``pending → paid_pending_delivery``; None if the order was not pending."""
        async with self._connection("mark order paid") as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders
                SET status = 'paid_pending_delivery',
                    paid_at = NOW()
                WHERE payment_reference = $1 AND status = 'pending'
                RETURNING *
                """,
                reference
            )
        return Order.from_record(row)

    async def mark_order_shipped(self, order_id: int, seller_id: int) -> Optional[Order]:
        """``paid_pending_delivery → shipped``; starts the claim window."""
        async with self._connection("mark order shipped") as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders
                SET status = 'shipped',
                    seller_confirmed = TRUE,
                    delivered_at = NOW()
                WHERE id = $1 AND seller_id = $2 AND status = 'paid_pending_delivery'
                RETURNING *
                """,
                order_id, seller_id
            )
        return Order.from_record(row)

    async def complete_order(
        self,
        order_id: int,
        allowed_statuses: Sequence[OrderStatus],
        buyer_confirmed: bool = False,
        code_confirmed: bool = False,
        require_undisputed: bool = False,
        delivered_before: Optional[datetime] = None
    ) -> Optional[Order]:
        """
        Complete an order and credit the seller, atomically and at most once.

        The status flip is guarded by ``status <> 'completed'`` and the credit
        only runs if that update matched, both inside one transaction. Whichever
        completion path commits first wins; every other racer gets None.

        Args:
            order_id: Order to complete
            allowed_statuses: Source states this completion path accepts
            buyer_confirmed: Also set ``buyer_confirmed``
            code_confirmed: Also stamp ``code_confirmed_at``
            require_undisputed: Refuse disputed orders
            delivered_before: Require ``delivered_at <= delivered_before``

        Returns:
            The completed order, or None if the guards did not match
        """
        statuses = [OrderStatus(s).value for s in allowed_statuses]
        async with self._connection("complete order") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE orders
                    SET status = 'completed',
                        escrow_released = TRUE,
                        completed_at = NOW(),
                        buyer_confirmed = buyer_confirmed OR $3,
                        code_confirmed_at = CASE WHEN $4 THEN NOW() ELSE code_confirmed_at END
                    WHERE id = $1
                      AND status <> 'completed'
                      AND status = ANY($2::text[])
                      AND ($5 = FALSE OR disputed = FALSE)
                      AND ($6::timestamptz IS NULL
                           OR (delivered_at IS NOT NULL AND delivered_at <= $6))
                    RETURNING *
                    """,
                    order_id, statuses, buyer_confirmed, code_confirmed,
                    require_undisputed, delivered_before
                )
                if row is None:
                    return None

                if row['seller_id'] is not None:
                    await conn.execute(
                        "UPDATE users SET wallet_balance = wallet_balance + $2 WHERE id = $1",
                        row['seller_id'], row['seller_amount']
                    )
                else:
                    logger.warning(f"Order {order_id} completed but its seller no longer exists")

        logger.info(f"Order {order_id} completed, {row['seller_amount']} released to seller")
        return Order.from_record(row)

    async def record_failed_code_attempt(self, order_id: int) -> Optional[int]:
        """Increment the failed delivery-code counter; returns the new count."""
        async with self._connection("record code attempt") as conn:
            return await conn.fetchval(
                """
                UPDATE orders
                SET code_attempts = code_attempts + 1
                WHERE id = $1 AND status <> 'completed'
                RETURNING code_attempts
                """,
                order_id
            )

    async def set_disputed(self, order_id: int, user_id: int, reason: str) -> Optional[Order]:
        """Raise the dispute flag on a non-completed, not-yet-disputed order."""
        async with self._connection("set disputed") as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders
                SET disputed = TRUE,
                    dispute_reason = $3,
                    disputed_by = $2
                WHERE id = $1 AND status <> 'completed' AND disputed = FALSE
                RETURNING *
                """,
                order_id, user_id, reason
            )
        return Order.from_record(row)

    async def clear_dispute(self, order_id: int) -> Optional[Order]:
        """Admin resolution: lift the dispute freeze and the code lockout."""
        async with self._connection("clear dispute") as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders
                SET disputed = FALSE,
                    dispute_reason = NULL,
                    disputed_by = NULL,
                    code_attempts = 0
                WHERE id = $1 AND status <> 'completed'
                RETURNING *
                """,
                order_id
            )
        return Order.from_record(row)

    async def list_claimable_orders(self, delivered_before: datetime) -> List[Order]:
        async with self._connection("list claimable orders") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM orders
                WHERE status = 'shipped'
                  AND disputed = FALSE
                  AND delivered_at IS NOT NULL
                  AND delivered_at <= $1
                ORDER BY delivered_at
                """,
                delivered_before
            )
        return [Order.from_record(row) for row in rows]

    async def list_stale_pending_orders(self, created_before: datetime, created_after: datetime,
                                        limit: int = 100) -> List[Order]:
        """Pending orders created inside the window, newest first."""
        async with self._connection("list stale pending orders") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM orders
                WHERE status = 'pending'
                  AND created_at <= $1
                  AND created_at >= $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                created_before, created_after, limit
            )
        return [Order.from_record(row) for row in rows]

    # ==================== WALLET TOP-UPS ====================

    async def create_topup_intent(self, reference: str, user_id: int, amount: Decimal) -> TopupIntent:
        async with self._connection("create topup intent") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO topup_intents (reference, user_id, amount)
                VALUES ($1, $2, $3)
                RETURNING *
                """,
                reference, user_id, amount
            )
        return TopupIntent.from_record(row)

    async def get_topup_intent(self, reference: str) -> Optional[TopupIntent]:
        async with self._connection("get topup intent") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM topup_intents WHERE reference = $1",
                reference
            )
        return TopupIntent.from_record(row)

    async def credit_topup(self, reference: str, amount: Decimal) -> Optional[TopupIntent]:
        """
        Credit a pending top-up to the user who started it, exactly once.

        Returns None if the intent was already credited (or never existed).
        """
        async with self._connection("credit topup") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE topup_intents
                    SET status = $2, credited_at = NOW()
                    WHERE reference = $1 AND status = $3
                    RETURNING *
                    """,
                    reference, TopupStatus.CREDITED.value, TopupStatus.PENDING.value
                )
                if row is None:
                    return None

                await conn.execute(
                    "UPDATE users SET wallet_balance = wallet_balance + $2 WHERE id = $1",
                    row['user_id'], amount
                )

        logger.info(f"Top-up {reference} credited {amount} to user {row['user_id']}")
        return TopupIntent.from_record(row)

    # ==================== BAN APPEALS ====================

    async def create_appeal(self, user_id: int, message: str) -> BanAppeal:
        async with self._connection("create appeal") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ban_appeals (user_id, message)
                VALUES ($1, $2)
                RETURNING *
                """,
                user_id, message
            )
        return BanAppeal.from_record(row)

    async def get_appeal(self, appeal_id: int) -> Optional[BanAppeal]:
        async with self._connection("get appeal") as conn:
            row = await conn.fetchrow("SELECT * FROM ban_appeals WHERE id = $1", appeal_id)
        return BanAppeal.from_record(row)

    async def get_open_appeal(self, user_id: int) -> Optional[BanAppeal]:
        async with self._connection("get open appeal") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM ban_appeals WHERE user_id = $1 AND status = 'open'",
                user_id
            )
        return BanAppeal.from_record(row)

    async def list_open_appeals(self) -> List[BanAppeal]:
        async with self._connection("list open appeals") as conn:
            rows = await conn.fetch(
                "SELECT * FROM ban_appeals WHERE status = 'open' ORDER BY created_at, id"
            )
        return [BanAppeal.from_record(row) for row in rows]

    async def resolve_appeal(self, appeal_id: int, status: AppealStatus) -> Optional[BanAppeal]:
        async with self._connection("resolve appeal") as conn:
            row = await conn.fetchrow(
                """
                UPDATE ban_appeals
                SET status = $2, resolved_at = NOW()
                WHERE id = $1 AND status = 'open'
                RETURNING *
                """,
                appeal_id, status.value
            )
        return BanAppeal.from_record(row)


# Global database instance
_db_instance: Optional[LedgerDatabase] = None


async def get_database(connection_string: Optional[str] = None) -> LedgerDatabase:
    """
    Get or create the global database instance.

    Args:
        connection_string: PostgreSQL connection string (optional, read from config)

    Returns:
        Connected LedgerDatabase instance with the schema in place
    """
    global _db_instance

    if _db_instance is None:
        from config import get_config

        config = get_config()
        _db_instance = LedgerDatabase(
            connection_string or config.database_url,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size
        )
        await _db_instance.connect()
        await _db_instance.init_schema()

    return _db_instance


async def close_database() -> None:
    """Close the global database instance."""
    global _db_instance

    if _db_instance:
        await _db_instance.disconnect()
        _db_instance = None
