"""
Paystack Integration Service.

This module wraps the parts of the Paystack API the marketplace uses:
initializing a checkout, verifying a transaction, registering transfer
recipients and sending transfers for wallet withdrawals. It also checks the
HMAC signature on incoming webhooks.

The HTTP helpers are plain blocking functions built on a retrying
``requests`` session. ``PaystackGateway`` exposes them to the async services
by running each call in a worker thread.

Amounts cross the Paystack API in kobo (1/100 naira); everything outside this
module works in naira.

Example:
    >>> from paystack_service import initialize_transaction
    >>>
    >>> result = initialize_transaction(
    ...     email="buyer@campus.edu",
    ...     amount=Decimal("7500"),
    ...     reference="ORD_20261019110203_9f1c2a7b",
    ... )
    >>> print(result['authorization_url'])
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import get_config, Config

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_DELAY = 2
SUCCESS_STATUS = 'success'
TRANSFER_FAILED_STATUSES = ('failed', 'reversed')
TRANSFER_SENT_STATUSES = ('success', 'pending', 'processing', 'queued', 'otp')


class PaystackError(Exception):
    """
    Base exception for Paystack related errors.

    ``rejected`` is True when Paystack answered and refused the request (a 4xx
    or a ``"status": false`` body). Timeouts, connection failures and 5xx
    responses leave it False because the request may still have been processed.
    """

    def __init__(self, message: str, rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


class TransferError(PaystackError):
    """Raised when a recipient or transfer request fails."""
    pass


@dataclass
class GatewayResult:
    """Outcome of a transaction verification."""
    reference: str
    status: str
    amount_paid: Decimal

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS_STATUS


def to_kobo(amount: Any) -> int:
    """Convert a naira amount to integer kobo."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_kobo(kobo: Any) -> Decimal:
    """Convert integer kobo to a 2dp naira amount."""
    return (Decimal(str(kobo or 0)) / 100).quantize(Decimal('0.01'))


def _get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    Returns:
        requests.Session: Configured session with retry adapter.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_DELAY,
        status_forcelist=[408, 429, 500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


def _request(
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    config: Optional[Config] = None,
    error_cls: type = PaystackError
) -> Dict[str, Any]:
    """
    Send an authenticated request and return the response's ``data`` object.

    Raises:
        PaystackError (or ``error_cls``): On transport errors, non-2xx
            responses or ``"status": false`` bodies.
    """
    config = config or get_config()
    url = f"{config.paystack_base_url.rstrip('/')}/{path.lstrip('/')}"
    headers = {
        'Authorization': f'Bearer {config.paystack_secret_key}',
        'Content-Type': 'application/json'
    }

    try:
        session = _get_session_with_retry()
        response = session.request(
            method,
            url,
            json=payload,
            headers=headers,
            timeout=config.api_timeout
        )
        body = response.json()

    except requests.exceptions.ConnectionError as e:
        logger.error(f"Connection error calling Paystack {path}: {e}")
        raise error_cls(f"Connection error: {e}") from e

    except requests.exceptions.Timeout as e:
        logger.error(f"Timeout calling Paystack {path}: {e}")
        raise error_cls(f"Request timeout: {e}") from e

    except requests.exceptions.RequestException as e:
        logger.error(f"Request error calling Paystack {path}: {e}")
        raise error_cls(f"Request failed: {e}") from e

    except ValueError as e:
        logger.error(f"Paystack {path} returned a non-JSON body: {e}")
        raise error_cls(f"Invalid response from Paystack: {e}") from e

    if response.status_code >= 400 or not body.get('status'):
        message = body.get('message', 'Unknown error')
        logger.error(f"Paystack {path} failed ({response.status_code}): {message}")
        raise error_cls(
            f"Paystack request failed: {message}",
            rejected=response.status_code < 500
        )

    return body.get('data') or {}


def initialize_transaction(
    email: str,
    amount: Decimal,
    reference: str,
    config: Optional[Config] = None
) -> Dict[str, Any]:
    """
    Start a Paystack checkout.

    Args:
        email: Customer's email address
        amount: Amount in naira
        reference: Unique payment reference
        config: Configuration (optional)

    Returns:
        Dict[str, Any]: ``authorization_url``, ``access_code`` and ``reference``

    Raises:
        PaystackError: If initialization fails
        ValueError: If input parameters are invalid
    """
    if not email or '@' not in email:
        raise ValueError("A valid email address is required")
    if Decimal(str(amount)) <= 0:
        raise ValueError("Amount must be positive")
    if not reference:
        raise ValueError("Reference is required")

    config = config or get_config()
    logger.info(f"Initializing Paystack transaction: Ref={reference}, Amount={amount}")

    return _request(
        'POST',
        '/transaction/initialize',
        {
            'email': email,
            'amount': to_kobo(amount),
            'reference': reference,
            'currency': config.currency,
            'callback_url': config.paystack_callback_url,
        },
        config=config
    )


def verify_transaction(reference: str, config: Optional[Config] = None) -> GatewayResult:
    """
    Ask Paystack for the final status of a transaction.

    Returns:
        GatewayResult with the amount converted back to naira

    Raises:
        PaystackError: If the verification request fails
    """
    data = _request('GET', f'/transaction/verify/{reference}', config=config)
    result = GatewayResult(
        reference=data.get('reference', reference),
        status=str(data.get('status', 'unknown')),
        amount_paid=from_kobo(data.get('amount'))
    )
    logger.info(f"Paystack verify {reference}: {result.status} ({result.amount_paid})")
    return result


def create_transfer_recipient(
    name: str,
    account_number: str,
    bank_code: str,
    config: Optional[Config] = None
) -> str:
    """
    Register a bank account as a transfer recipient.

    Returns:
        str: The ``RCP_...`` recipient code

    Raises:
        TransferError: If Paystack rejects the account
    """
    config = config or get_config()
    data = _request(
        'POST',
        '/transferrecipient',
        {
            'type': 'nuban',
            'name': name,
            'account_number': account_number,
            'bank_code': bank_code,
            'currency': config.currency,
        },
        config=config,
        error_cls=TransferError
    )
    code = data.get('recipient_code')
    if not code:
        raise TransferError("Paystack did not return a recipient code")
    return code


def initiate_transfer(
    recipient_code: str,
    amount: Decimal,
    reference: str,
    reason: str = 'Seller Payout',
    config: Optional[Config] = None
) -> Dict[str, Any]:
    """
    Send money from the Paystack balance to a recipient.

    Paystack deduplicates transfers by ``reference``, so a retried request
    cannot pay out twice.

    Raises:
        TransferError: If the transfer is rejected or its outcome is unknown
    """
    logger.info(f"Initiating transfer {reference} of {amount} to {recipient_code}")
    return _request(
        'POST',
        '/transfer',
        {
            'source': 'balance',
            'reason': reason,
            'amount': to_kobo(amount),
            'recipient': recipient_code,
            'reference': reference,
        },
        config=config,
        error_cls=TransferError
    )


def verify_transfer(reference: str, config: Optional[Config] = None) -> str:
    """
    Look up the status of a transfer by its reference.

    Returns:
        str: Paystack transfer status, e.g. ``success``, ``pending`` or ``failed``

    Raises:
        TransferError: If the lookup fails or the transfer is unknown
    """
    data = _request(
        'GET',
        f'/transfer/verify/{reference}',
        config=config,
        error_cls=TransferError
    )
    transfer_status = str(data.get('status', 'unknown'))
    logger.info(f"Paystack transfer {reference}: {transfer_status}")
    return transfer_status


def verify_webhook_signature(body: bytes, signature: Optional[str], secret_key: str) -> bool:
    """Check the ``x-paystack-signature`` header (HMAC-SHA512 of the raw body)."""
    if not signature:
        return False
    expected = hmac.new(secret_key.encode(), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class PaystackGateway:
    """Async payment-gateway adapter over the blocking Paystack helpers."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    async def initialize(self, amount: Decimal, reference: str, email: str) -> str:
        """Start a checkout and return the URL to redirect the payer to."""
        data = await asyncio.to_thread(
            initialize_transaction, email, amount, reference, self.config
        )
        url = data.get('authorization_url')
        if not url:
            raise PaystackError(f"No authorization URL returned for {reference}")
        return url

    async def verify(self, reference: str) -> GatewayResult:
        return await asyncio.to_thread(verify_transaction, reference, self.config)

    async def create_recipient(self, name: str, account_number: str, bank_code: str) -> str:
        return await asyncio.to_thread(
            create_transfer_recipient, name, account_number, bank_code, self.config
        )

    async def transfer(self, recipient_code: str, amount: Decimal, reference: str,
                       reason: str = 'Seller Payout') -> Dict[str, Any]:
        return await asyncio.to_thread(
            initiate_transfer, recipient_code, amount, reference, reason, self.config
        )

    async def verify_transfer(self, reference: str) -> str:
        return await asyncio.to_thread(verify_transfer, reference, self.config)
