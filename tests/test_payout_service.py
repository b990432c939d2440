"""Tests for wallet withdrawals."""

from decimal import Decimal

import pytest
import pytest_asyncio

from exceptions import PayoutError, PayoutUnconfirmedError, ValidationError
from payout_service import PayoutService


@pytest.fixture
def payouts(ledger, gateway, config) -> PayoutService:
    return PayoutService(ledger, gateway, config)


@pytest_asyncio.fixture
async def funded_seller(ledger, seller):
    await ledger.update_bank_details(seller.id, 'GTBank', '0123456789', '058')
    await ledger.credit_wallet(seller.id, Decimal('5000'))
    return await ledger.get_user(seller.id)


class TestWithdraw:

    async def test_registers_recipient_once(self, payouts, ledger, gateway, funded_seller):
        first = await payouts.withdraw(funded_seller.id, '1000')
        await payouts.withdraw(funded_seller.id, '1000')

        assert first['recipient_code'] == 'RCP_0123456789'
        assert gateway.recipients == [('seller', '0123456789', '058')]
        assert (await ledger.get_user(funded_seller.id)).payout_recipient_code == 'RCP_0123456789'
        assert ledger.balance(funded_seller.id) == Decimal('3000')
        assert [t[1] for t in gateway.transfers] == [Decimal('1000.00'), Decimal('1000.00')]

    async def test_insufficient_balance(self, payouts, ledger, gateway, funded_seller):
        with pytest.raises(PayoutError):
            await payouts.withdraw(funded_seller.id, '6000')
        assert ledger.balance(funded_seller.id) == Decimal('5000')
        assert gateway.transfers == []

    async def test_failed_transfer_refunds_wallet(self, payouts, ledger, gateway, funded_seller):
        gateway.fail_transfer = True
        with pytest.raises(PayoutError):
            await payouts.withdraw(funded_seller.id, '2500')
        assert ledger.balance(funded_seller.id) == Decimal('5000')

    async def test_below_minimum(self, payouts, funded_seller):
        with pytest.raises(ValidationError):
            await payouts.withdraw(funded_seller.id, '50')

    async def test_requires_bank_details(self, payouts, ledger, buyer):
        await ledger.credit_wallet(buyer.id, Decimal('5000'))
        with pytest.raises(ValidationError):
            await payouts.withdraw(buyer.id, '1000')

    async def test_transfer_carries_unique_reference(self, payouts, gateway, funded_seller):
        first = await payouts.withdraw(funded_seller.id, '1000')
        second = await payouts.withdraw(funded_seller.id, '1000')

        assert first['reference'] != second['reference']
        assert first['reference'] == first['reference'].lower()
        assert [t[2] for t in gateway.transfers] == [first['reference'], second['reference']]


class TestAmbiguousTransfer:

    async def test_timeout_keeps_debit_and_alerts_admin(self, ledger, gateway, config, admin_notifier,
                                                       funded_seller):
        payouts = PayoutService(ledger, gateway, config, admin_notifier)
        gateway.transfer_timeout = True

        with pytest.raises(PayoutUnconfirmedError) as excinfo:
            await payouts.withdraw(funded_seller.id, '2500')

        assert len(gateway.transfers) == 1
        assert excinfo.value.reference == gateway.transfers[0][2]
        assert ledger.balance(funded_seller.id) == Decimal('2500')
        assert admin_notifier.subjects_for('424242') == ['Unconfirmed payout']

    async def test_timeout_then_confirmed_sent(self, payouts, ledger, gateway, funded_seller):
        gateway.transfer_timeout = True
        gateway.transfer_status = 'success'

        result = await payouts.withdraw(funded_seller.id, '2500')

        assert result['transfer']['status'] == 'success'
        assert ledger.balance(funded_seller.id) == Decimal('2500')

    async def test_timeout_then_reported_failed_refunds(self, payouts, ledger, gateway, funded_seller):
        gateway.transfer_timeout = True
        gateway.transfer_status = 'failed'

        with pytest.raises(PayoutError) as excinfo:
            await payouts.withdraw(funded_seller.id, '2500')

        assert not isinstance(excinfo.value, PayoutUnconfirmedError)
        assert ledger.balance(funded_seller.id) == Decimal('5000')
