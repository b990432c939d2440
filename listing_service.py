"""
Listing Service Module.

Seller-side writes that pass through the fraud engine before anything is
stored: creating listings and changing payout bank details. Edits and
deletes are scoped to the seller's own products.
"""

import logging
from decimal import Decimal
from typing import Optional

from config import get_config, Config
from database import IntegrityError
from exceptions import (
    AccessDeniedError, FraudRejectedError, NotFoundError, ValidationError,
)
from fraud_engine import FraudEngine
from models import AccessStatus, Product, User
from utils import mask_sensitive_data, sanitize_input, validate_amount

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 2000


class ListingService:
    """
    Fraud-gated listing and bank-detail management.

    Attributes:
        db: Ledger store
        fraud_engine: Rule evaluator consulted before every gated write
        config: Configuration instance
    """

    def __init__(self, database, fraud_engine: FraudEngine, config: Optional[Config] = None):
        self.db = database
        self.fraud_engine = fraud_engine
        self.config = config or get_config()

    async def _active_user(self, user_id: int) -> User:
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        access = AccessStatus.from_user(user)
        if not access.is_active:
            raise AccessDeniedError(user_id, access.describe())
        return user

    def _clean_listing(self, title: str, description: str, price) -> tuple:
        title = sanitize_input(title, max_length=MAX_TITLE_LENGTH)
        if not title:
            raise ValidationError("Title is required")

        description = sanitize_input(description, max_length=MAX_DESCRIPTION_LENGTH)

        is_valid, amount, error = validate_amount(price, min_amount=Decimal('0.01'))
        if not is_valid:
            raise ValidationError(error)
        return title, description, amount

    async def create_listing(
        self,
        seller_id: int,
        title: str,
        description: str,
        price,
        category: Optional[str] = None
    ) -> Product:
        """
        Create a product after the fraud rules have cleared it.

        Args:
            seller_id: Listing seller
            title: Product title
            description: Product description
            price: Asking price
            category: Optional category name

        Returns:
            The stored product

        Raises:
            NotFoundError: If the seller does not exist
            AccessDeniedError: If the seller is banned
            ValidationError: If the input is malformed
            FraudRejectedError: If a fraud rule fired (flag/ban already applied)
        """
        seller = await self._active_user(seller_id)
        title, description, amount = self._clean_listing(title, description, price)

        verdict = await self.fraud_engine.evaluate_listing(seller, title, description, amount)
        if verdict.is_fraud:
            logger.warning(f"Listing by user {seller_id} rejected ({verdict.rule}): {verdict.reason}")
            raise FraudRejectedError(verdict)

        product = await self.db.create_product(
            seller_id, title, description, amount,
            sanitize_input(category, max_length=100) or None
        )
        self.fraud_engine.record_listing(seller_id)

        logger.info(f"Product {product.id} listed by user {seller_id} at {amount}")
        return product

    async def update_listing(
        self,
        product_id: int,
        seller_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        price=None,
        category: Optional[str] = None
    ) -> Product:
        """
        Edit one of the seller's own products.

        A changed title, description or price is re-checked against the
        keyword and price rules using the listing as it would look afterwards.

        Raises:
            NotFoundError: If no product with this id belongs to the seller
            AccessDeniedError: If the seller is banned
            FraudRejectedError: If the edited listing trips a fraud rule
        """
        seller = await self._active_user(seller_id)
        current = await self.db.get_product(product_id)
        if current is None or current.seller_id != seller_id:
            raise NotFoundError("Product", product_id)

        if title is not None:
            title = sanitize_input(title, max_length=MAX_TITLE_LENGTH)
            if not title:
                raise ValidationError("Title cannot be empty")
        if description is not None:
            description = sanitize_input(description, max_length=MAX_DESCRIPTION_LENGTH)
        if price is not None:
            is_valid, price, error = validate_amount(price, min_amount=Decimal('0.01'))
            if not is_valid:
                raise ValidationError(error)
        if category is not None:
            category = sanitize_input(category, max_length=100)

        if title is not None or description is not None or price is not None:
            verdict = await self.fraud_engine.evaluate_listing_edit(
                seller,
                title if title is not None else current.title,
                description if description is not None else current.description,
                price if price is not None else current.price
            )
            if verdict.is_fraud:
                logger.warning(
                    f"Edit of product {product_id} by user {seller_id} rejected "
                    f"({verdict.rule}): {verdict.reason}"
                )
                raise FraudRejectedError(verdict)

        product = await self.db.update_product(
            product_id, seller_id,
            title=title, description=description, price=price, category=category
        )
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    async def delete_listing(self, product_id: int, seller_id: int) -> None:
        if not await self.db.delete_product(product_id, seller_id):
            raise NotFoundError("Product", product_id)
        logger.info(f"Product {product_id} deleted by user {seller_id}")

    async def update_bank_details(
        self,
        user_id: int,
        bank_name: str,
        account_number: str,
        bank_code: str
    ) -> User:
        """
        Save payout bank details after the bank-collision check.

        Raises:
            ValidationError: If the account number or bank code is malformed
            FraudRejectedError: If another user already holds the account
        """
        user = await self._active_user(user_id)

        account_number = (account_number or '').strip()
        bank_code = (bank_code or '').strip()
        if not account_number.isdigit() or len(account_number) != 10:
            raise ValidationError("Account number must be 10 digits")
        if not bank_code.isdigit():
            raise ValidationError("Bank code must be numeric")

        verdict = await self.fraud_engine.evaluate_bank_update(user, account_number)
        if verdict.is_fraud:
            raise FraudRejectedError(verdict)

        try:
            updated = await self.db.update_bank_details(
                user_id, sanitize_input(bank_name, max_length=100), account_number, bank_code
            )
        except IntegrityError as e:
            # Another user registered the same account between the check and the write
            raise ValidationError("This account number is already registered") from e

        if updated is None:
            raise NotFoundError("User", user_id)

        logger.info(f"Bank details updated for user {user_id} ({mask_sensitive_data(account_number)})")
        return updated
