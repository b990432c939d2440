"""Tests for row normalisation and the access-status value object."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from models import AccessState, AccessStatus, Order, OrderStatus, User, coerce_bool, coerce_datetime


class TestCoercion:

    @pytest.mark.parametrize('raw, expected', [
        (None, False), (True, True), (0, False), (1, True),
        ('0', False), ('1', True), ('true', True), ('FALSE', False), ('t', True),
    ])
    def test_coerce_bool(self, raw, expected):
        assert coerce_bool(raw) is expected

    def test_epoch_milliseconds(self):
        assert coerce_datetime(1893456000000) == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_epoch_seconds_string(self):
        assert coerce_datetime('1893456000') == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_naive_datetime_taken_as_utc(self):
        assert coerce_datetime(datetime(2030, 1, 1)).tzinfo == timezone.utc

    def test_iso_string(self):
        assert coerce_datetime('2030-01-01T00:00:00Z') == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_empty(self):
        assert coerce_datetime(None) is None
        assert coerce_datetime('') is None


class TestRows:

    def test_order_integer_delivery_code_keeps_leading_zeros(self):
        order = Order.from_record({
            'id': 1, 'amount': '100', 'seller_amount': '96', 'status': 'shipped',
            'delivery_code': 4211, 'disputed': '0',
        })
        assert order.delivery_code == '004211'
        assert order.status == OrderStatus.SHIPPED
        assert order.disputed is False

    def test_claim_available_at(self):
        delivered = datetime(2030, 1, 1, tzinfo=timezone.utc)
        order = Order.from_record({
            'id': 1, 'amount': '100', 'seller_amount': '96', 'status': 'shipped',
            'delivery_code': '000001', 'delivered_at': delivered,
        })
        assert order.claim_available_at(timedelta(hours=24)) == delivered + timedelta(hours=24)

    def test_none_record(self):
        assert User.from_record(None) is None


class TestAccessStatus:

    def make_user(self, **fields):
        return User.from_record({'id': 1, 'username': 'ada', **fields})

    def test_not_banned(self):
        assert AccessStatus.from_user(self.make_user()).is_active

    def test_future_expiry(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        user = self.make_user(is_banned=1, ban_expires=now + timedelta(days=1), ban_reason='spam')
        status = AccessStatus.from_user(user, now)
        assert status.state == AccessState.BANNED_UNTIL
        assert 'spam' in status.describe()

    def test_expired_ban_is_active(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        user = self.make_user(is_banned='true', ban_expires=now - timedelta(seconds=1))
        assert AccessStatus.from_user(user, now).is_active

    def test_permanent_ban(self):
        status = AccessStatus.from_user(self.make_user(is_banned=True))
        assert status.state == AccessState.BANNED_PERMANENT
        assert status.legacy_blocked is True

    def test_banned_constructor(self):
        assert AccessStatus.banned(None).state == AccessState.BANNED_PERMANENT
        assert AccessStatus.active().legacy_blocked is False

    def test_wallet_balance_is_decimal(self):
        assert self.make_user(wallet_balance='12.50').wallet_balance == Decimal('12.50')
