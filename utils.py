"""
Utilities module for the campus marketplace escrow service.

Provides helper functions for logging, validation, formatting,
and reference/delivery-code generation.
"""

import json
import re
import logging
import secrets
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Any, Tuple
from logging.handlers import RotatingFileHandler
from pathlib import Path


RESET = '\033[0m'
LEVEL_COLORS = {
    'DEBUG': '\033[90m',
    'INFO': '\033[94m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1m\033[91m',
}
TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name."""

    def format(self, record: logging.LogRecord) -> str:
        # Copy so the file handler sees the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = LEVEL_COLORS.get(record.levelname, RESET)
        record.levelname = f"{color}{record.levelname}{RESET}"
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record),
            'name': record.name,
            'level': record.levelname,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logger(
    name: str = 'campus_market',
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Configure a console handler and, with ``log_file``, a rotating file handler.

    An empty ``name`` configures the root logger so every module logger
    inherits the handlers. Calling it again replaces the handlers.
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(name or None)
    logger.setLevel(level)
    logger.handlers = []

    if log_format == 'json':
        plain = JsonFormatter()
    else:
        plain = logging.Formatter(TEXT_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if colorful_console and log_format != 'json':
        console_handler.setFormatter(ColoredFormatter(TEXT_FORMAT))
    else:
        console_handler.setFormatter(plain)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(plain)
        logger.addHandler(file_handler)

    return logger


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a 2dp Decimal.

    Raises:
        ValueError: If the value is not numeric
    """
    try:
        if isinstance(value, str):
            value = value.replace(',', '').strip()
        return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid amount format: '{value}'")


def validate_amount(
    amount: Any,
    min_amount: Decimal = Decimal('1'),
    max_amount: Optional[Decimal] = None
) -> Tuple[bool, Optional[Decimal], Optional[str]]:
    """
    Validate a money amount.

    Args:
        amount: Amount to validate (can be str, int, float or Decimal)
        min_amount: Minimum allowed amount
        max_amount: Maximum allowed amount (unbounded when None)

    Returns:
        Tuple of (is_valid, amount_as_decimal, error_message)

    Example:
        >>> is_valid, amt, error = validate_amount('1,500')
        >>> print(amt)
        1500.00
    """
    try:
        amount_dec = to_money(amount)
    except ValueError as e:
        return False, None, str(e)

    if not amount_dec.is_finite():
        return False, None, f"Invalid amount format: '{amount}'"

    if amount_dec < min_amount:
        return False, None, f"Amount must be at least {min_amount:,}"

    if max_amount is not None and amount_dec > max_amount:
        return False, None, f"Amount must not exceed {max_amount:,}"

    return True, amount_dec, None


def format_currency(amount: Any, currency: str = 'NGN') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(Decimal('7500'))
        'NGN 7,500.00'
    """
    return f"{currency} {Decimal(str(amount)):,.2f}"


def sanitize_input(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input to prevent injection attacks.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ''

    text = text[:max_length]

    # Remove potentially dangerous characters
    text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., account numbers, tokens).

    Example:
        >>> mask_sensitive_data('0123456789', 4)
        '******6789'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]


def generate_reference(prefix: str = 'ORD') -> str:
    """
    Generate a unique payment reference, e.g. ``ORD_20261019110203_9f1c2a7b``.

    The random suffix keeps references unique across concurrent checkouts
    started in the same second.
    """
    return f"{prefix}_{utcnow().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}"


def generate_delivery_code() -> str:
    """Random zero-padded 6-digit delivery code."""
    return f"{secrets.randbelow(1_000_000):06d}"
