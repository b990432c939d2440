"""Tests for utility helpers."""

import json
import logging
import re
from decimal import Decimal

import pytest

from utils import (
    format_currency, generate_delivery_code, generate_reference, mask_sensitive_data,
    sanitize_input, setup_logger, validate_amount,
)


class TestAmounts:

    @pytest.mark.parametrize('raw, expected', [
        ('1,500', Decimal('1500.00')),
        (7500, Decimal('7500.00')),
        ('99.999', Decimal('100.00')),
    ])
    def test_valid(self, raw, expected):
        assert validate_amount(raw) == (True, expected, None)

    def test_below_minimum(self):
        is_valid, amount, error = validate_amount('0.50')
        assert not is_valid and amount is None
        assert 'at least' in error

    def test_above_maximum(self):
        is_valid, _, error = validate_amount('5000', max_amount=Decimal('1000'))
        assert not is_valid
        assert 'exceed' in error

    def test_not_a_number(self):
        assert validate_amount('ten naira')[0] is False

    def test_format_currency(self):
        assert format_currency(Decimal('7500')) == 'NGN 7,500.00'
        assert format_currency('1234567.5', 'KES') == 'KES 1,234,567.50'


class TestText:

    def test_sanitize_strips_markup(self):
        assert sanitize_input('  <b>Desk "lamp"</b>; ') == 'bDesk lamp/b'

    def test_sanitize_truncates(self):
        assert sanitize_input('x' * 50, max_length=10) == 'x' * 10

    def test_mask(self):
        assert mask_sensitive_data('0123456789') == '******6789'
        assert mask_sensitive_data('12') == '**'


class TestGenerators:

    def test_delivery_code_is_six_digits(self):
        for _ in range(50):
            assert re.fullmatch(r'\d{6}', generate_delivery_code())

    def test_references_are_unique(self):
        refs = {generate_reference('TOP') for _ in range(100)}
        assert len(refs) == 100
        assert all(ref.startswith('TOP_') for ref in refs)


class TestLogger:

    def test_file_handler_written_uncoloured(self, tmp_path):
        log_file = tmp_path / 'logs' / 'escrow.log'
        logger = setup_logger('escrow_test', 'DEBUG', str(log_file))

        logger.warning('Order 7 locked')
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text(encoding='utf-8')
        assert 'Order 7 locked' in content
        assert '\033[' not in content
        assert logger.level == logging.DEBUG

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logger('escrow_twice')
        logger = setup_logger('escrow_twice')
        assert len(logger.handlers) == 1

    def test_json_lines_in_file(self, tmp_path):
        log_file = tmp_path / 'escrow.jsonl'
        logger = setup_logger('escrow_json', 'INFO', str(log_file), log_format='json')

        logger.info('Payout "payout_1" queued')
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text(encoding='utf-8').splitlines()[0])
        assert entry['level'] == 'INFO'
        assert entry['message'] == 'Payout "payout_1" queued'
