"""
Configuration management module for the campus marketplace escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
Escrow timings and fraud-engine thresholds are tunable here so that
deployments can tighten or relax them without code changes.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


class Config:
    """
    Configuration class that loads and validates all application settings.

    All required configuration values are validated on initialization.

    Attributes:
        database_url: PostgreSQL connection URL for the ledger store
        paystack_secret_key: Paystack secret key (also signs webhooks)
        paystack_base_url: Paystack API base URL
        paystack_callback_url: Where Paystack redirects the buyer after paying
        currency: ISO currency code used for display and transfers
        service_fee_percent: Marketplace fee deducted from every order
        claim_window_hours: Hours after delivery before a seller may claim funds
        delivery_code_max_attempts: Failed code attempts before lockout
        spam_window_seconds: Minimum gap between two listings by one seller
        new_account_listing_limit: Listings allowed to accounts younger than a day
        price_history_limit: Historical prices sampled by the price guard
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Ledger store
        self.database_url: str = self._get_required_env('DATABASE_URL')
        self.db_pool_min_size: int = int(os.getenv('DB_POOL_MIN_SIZE', '2'))
        self.db_pool_max_size: int = int(os.getenv('DB_POOL_MAX_SIZE', '10'))

        # Paystack
        self.paystack_secret_key: str = self._get_required_env('PAYSTACK_SECRET_KEY')
        self.paystack_base_url: str = os.getenv('PAYSTACK_BASE_URL', 'https://api.paystack.co')
        self.paystack_callback_url: str = os.getenv(
            'PAYSTACK_CALLBACK_URL', 'http://localhost:8000/paystack/callback'
        )
        self.currency: str = os.getenv('CURRENCY', 'NGN')

        # Escrow
        self.service_fee_percent: Decimal = self._get_decimal_env('SERVICE_FEE_PERCENT', '4')
        self.claim_window_hours: int = int(os.getenv('CLAIM_WINDOW_HOURS', '24'))
        self.delivery_code_max_attempts: int = int(os.getenv('DELIVERY_CODE_MAX_ATTEMPTS', '5'))
        self.min_withdrawal_amount: Decimal = self._get_decimal_env('MIN_WITHDRAWAL_AMOUNT', '100')

        # Fraud engine
        self.spam_window_seconds: float = float(os.getenv('SPAM_WINDOW_SECONDS', '5'))
        self.new_account_listing_limit: int = int(os.getenv('NEW_ACCOUNT_LISTING_LIMIT', '3'))
        self.price_history_limit: int = int(os.getenv('PRICE_HISTORY_LIMIT', '50'))

        # Notifications (Optional)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')
        self.brevo_api_key: Optional[str] = os.getenv('BREVO_API_KEY')
        self.email_from: Optional[str] = os.getenv('EMAIL_FROM')
        self.email_sender_name: str = os.getenv('EMAIL_SENDER_NAME', 'Campus Market Security')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_debug: bool = _env_bool('APP_DEBUG', 'True')
        self.app_name: str = os.getenv('APP_NAME', 'CAMPUS_MARKET')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: str = os.getenv('LOG_FILE', 'logs/app.log')
        self.log_max_size: int = int(os.getenv('LOG_MAX_SIZE', '10485760'))  # 10MB
        self.log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', '5'))

        # Automation
        self.enable_automation: bool = _env_bool('ENABLE_AUTOMATION', 'True')
        self.claim_reminder_interval_minutes: int = int(
            os.getenv('CLAIM_REMINDER_INTERVAL_MINUTES', '60')
        )
        self.pending_verify_interval_minutes: int = int(
            os.getenv('PENDING_VERIFY_INTERVAL_MINUTES', '15')
        )
        self.pending_verify_min_age_minutes: int = int(
            os.getenv('PENDING_VERIFY_MIN_AGE_MINUTES', '10')
        )
        self.pending_verify_max_age_hours: int = int(
            os.getenv('PENDING_VERIFY_MAX_AGE_HOURS', '48')
        )

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = int(os.getenv('API_PORT', '8000'))
        self.api_timeout: int = int(os.getenv('TIMEOUT', '30'))

        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Get a required environment variable.

        Args:
            key: Environment variable name

        Returns:
            Value of the environment variable

        Raises:
            ConfigError: If the environment variable is not set
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _get_decimal_env(self, key: str, default: str) -> Decimal:
        raw = os.getenv(key, default)
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a number, got '{raw}'")

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        if not self.database_url.startswith(('postgres://', 'postgresql://')):
            raise ConfigError("DATABASE_URL must be a postgres:// or postgresql:// URL")

        if not Decimal('0') <= self.service_fee_percent < Decimal('100'):
            raise ConfigError(
                f"SERVICE_FEE_PERCENT must be between 0 and 100, got {self.service_fee_percent}"
            )

        if self.claim_window_hours < 1:
            raise ConfigError(f"CLAIM_WINDOW_HOURS must be at least 1, got {self.claim_window_hours}")

        if self.pending_verify_max_age_hours * 60 <= self.pending_verify_min_age_minutes:
            raise ConfigError(
                f"PENDING_VERIFY_MAX_AGE_HOURS must cover more than PENDING_VERIFY_MIN_AGE_MINUTES, "
                f"got {self.pending_verify_max_age_hours}h"
            )

        if self.delivery_code_max_attempts < 1:
            raise ConfigError(
                f"DELIVERY_CODE_MAX_ATTEMPTS must be at least 1, "
                f"got {self.delivery_code_max_attempts}"
            )

        if self.spam_window_seconds < 0:
            raise ConfigError(f"SPAM_WINDOW_SECONDS cannot be negative, got {self.spam_window_seconds}")

        if self.new_account_listing_limit < 1:
            raise ConfigError(
                f"NEW_ACCOUNT_LISTING_LIMIT must be at least 1, got {self.new_account_listing_limit}"
            )

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

        if self.db_pool_max_size < self.db_pool_min_size:
            raise ConfigError(
                f"DB_POOL_MAX_SIZE ({self.db_pool_max_size}) must not be smaller than "
                f"DB_POOL_MIN_SIZE ({self.db_pool_min_size})"
            )

    @property
    def has_telegram_config(self) -> bool:
        """Check if Telegram notifications can be sent."""
        return bool(self.telegram_bot_token)

    @property
    def has_email_config(self) -> bool:
        """Check if email notifications can be sent."""
        return bool(self.brevo_api_key and self.email_from)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == 'production'

    @property
    def is_debug(self) -> bool:
        """Check if debug mode is enabled."""
        return self.app_debug

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"currency={self.currency}, "
            f"service_fee_percent={self.service_fee_percent}, "
            f"claim_window_hours={self.claim_window_hours})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.claim_window_hours)
        24
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
