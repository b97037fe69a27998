"""
Escrow ledger tests: fees, lazy maturity, batched withdrawal.
"""
import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from errors import Conflict, Forbidden, IllegalStateTransition, NotFoundError, ValidationError
from models import db, DomainEvent, Earning, WithdrawalBatch
from services import engagements, envelopes, escrow

CAPTURED_AT = datetime(2030, 5, 1, 12, 0, 0)
ONE_SECOND = timedelta(seconds=1)


@pytest.fixture
def earning(engagement):
    """Escrow entry from capturing payment on the engagement fixture"""
    result = engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)
    return result.earning


def _captured_offer(organizer, professional, event, captured_at):
    """Accept an 800 offer from the professional and capture payment at captured_at"""
    offer = envelopes.send_envelope(professional.id, {
        'receiver_id': organizer.id,
        'kind': 'service_offer',
        'body': 'I can also DJ',
        'event_id': event.id,
        'services': ['musician'],
        'price': 800,
    })
    _, engagement = envelopes.accept(offer.id, organizer.id)
    result = engagements.record_payment_captured(engagement.id, 'ref-2', 800, now=captured_at)
    return result.earning


@pytest.fixture
def second_earning(organizer, professional, event):
    """Another captured engagement for the same professional"""
    return _captured_offer(organizer, professional, event, CAPTURED_AT)


class TestFees:
    """Test fee and net computation"""

    def test_fee_rounds_half_up_to_cents(self):
        fee, net = escrow.compute_fee(Decimal('333.33'), 0.05)
        assert fee == Decimal('16.67')
        assert net == Decimal('316.66')

    def test_net_is_gross_minus_fee(self, earning):
        assert Decimal(str(earning.net_amount)) == (
            Decimal(str(earning.gross_amount)) - Decimal(str(earning.service_fee))
        )

    def test_invalid_fee_rate(self):
        with pytest.raises(ValidationError):
            escrow.compute_fee(Decimal('100'), 1.5)

    def test_create_entry_is_idempotent(self, earning, engagement):
        """A repeat call returns the existing entry unchanged"""
        again, events = escrow.create_entry(engagement, gross=Decimal('1'), fee_rate=0.5)

        assert again.id == earning.id
        assert events == []
        assert float(again.gross_amount) == 5000.0
        assert Earning.query.count() == 1


class TestMaturity:
    """Test lazy pending -> available transition"""

    def test_pending_before_hold_elapses(self, earning, professional):
        items = escrow.list_earnings(professional.id, now=earning.available_date - ONE_SECOND)
        assert items[0].status == 'pending'

    def test_matures_on_read(self, earning, professional):
        available_date = earning.available_date
        items = escrow.list_earnings(professional.id, now=available_date)

        assert items[0].status == 'available'
        assert items[0].matured_at == available_date
        assert items[0].available_date == available_date

    def test_available_event_emitted_once(self, earning, professional):
        later = earning.available_date + ONE_SECOND
        escrow.list_earnings(professional.id, now=later)
        escrow.list_earnings(professional.id, now=later)
        escrow.get_earning(earning.id, professional.id, now=later)

        assert DomainEvent.query.filter_by(name='earning:available').count() == 1

    def test_summary(self, earning, second_earning, professional):
        summary = escrow.earnings_summary(professional.id, now=CAPTURED_AT)

        assert summary['pending'] == 4750.0 + 760.0
        assert summary['available'] == 0.0
        assert summary['count'] == 2
        assert summary['next_available_date'] == earning.available_date.isoformat()

    def test_other_professional_cannot_read(self, earning, other_professional):
        with pytest.raises(Forbidden):
            escrow.get_earning(earning.id, other_professional.id)


class TestWithdraw:
    """Test atomic, idempotent batch withdrawal"""

    def test_withdraw_before_available_fails(self, earning, professional):
        """Withdrawal one second before maturity is refused without any change"""
        with pytest.raises(IllegalStateTransition) as exc_info:
            escrow.withdraw(professional.id, [earning.id], 'batch-1',
                            now=earning.available_date - ONE_SECOND)

        assert 'not yet available' in exc_info.value.message
        assert db.session.get(Earning, earning.id).status == 'pending'
        assert WithdrawalBatch.query.count() == 0

    def test_withdraw_after_hold(self, earning, professional):
        """One second after maturity the entry is withdrawn under the batch id"""
        now = earning.available_date + ONE_SECOND
        batch = escrow.withdraw(professional.id, [earning.id], 'batch-1', now=now)

        stored = db.session.get(Earning, earning.id)
        assert stored.status == 'withdrawn'
        assert stored.withdrawal_id == 'batch-1'
        assert stored.withdrawn_at == now
        assert float(batch.total_net) == 4750.0

    def test_resubmitting_batch_is_idempotent(self, earning, professional):
        now = earning.available_date + ONE_SECOND
        first = escrow.withdraw(professional.id, [earning.id], 'batch-1', now=now)
        second = escrow.withdraw(professional.id, [earning.id], 'batch-1', now=now + ONE_SECOND)

        assert second.id == first.id
        assert second.to_dict() == first.to_dict()
        assert WithdrawalBatch.query.count() == 1
        assert DomainEvent.query.filter_by(name='earning:withdrawn').count() == 1

    def test_batch_id_reuse_with_other_entries_conflicts(self, earning, second_earning, professional):
        now = earning.available_date + ONE_SECOND
        escrow.withdraw(professional.id, [earning.id], 'batch-1', now=now)

        with pytest.raises(Conflict):
            escrow.withdraw(professional.id, [second_earning.id], 'batch-1', now=now)
        assert db.session.get(Earning, second_earning.id).withdrawal_id is None

    def test_batch_is_all_or_nothing(self, earning, organizer, professional, event):
        """One immature entry blocks the whole batch"""
        second_earning = _captured_offer(organizer, professional, event, CAPTURED_AT + timedelta(days=30))

        with pytest.raises(IllegalStateTransition):
            escrow.withdraw(professional.id, [earning.id, second_earning.id], 'batch-1',
                            now=earning.available_date + ONE_SECOND)

        assert db.session.get(Earning, earning.id).status == 'available'
        assert db.session.get(Earning, earning.id).withdrawal_id is None
        assert db.session.get(Earning, second_earning.id).status == 'pending'

    def test_multi_entry_batch(self, earning, second_earning, professional):
        batch = escrow.withdraw(professional.id, [earning.id, second_earning.id], 'batch-2',
                                now=earning.available_date + ONE_SECOND)

        assert float(batch.total_net) == 4750.0 + 760.0
        assert {e.withdrawal_id for e in Earning.query.all()} == {'batch-2'}

    def test_already_withdrawn_entry(self, earning, professional):
        now = earning.available_date + ONE_SECOND
        escrow.withdraw(professional.id, [earning.id], 'batch-1', now=now)

        with pytest.raises(IllegalStateTransition):
            escrow.withdraw(professional.id, [earning.id], 'batch-2', now=now)

    def test_foreign_entries_forbidden(self, earning, other_professional):
        with pytest.raises(Forbidden):
            escrow.withdraw(other_professional.id, [earning.id], 'batch-x',
                            now=earning.available_date + ONE_SECOND)

    def test_unknown_entry(self, professional):
        with pytest.raises(NotFoundError):
            escrow.withdraw(professional.id, ['missing'], 'batch-1')

    def test_validation(self, professional):
        with pytest.raises(ValidationError):
            escrow.withdraw(professional.id, [], 'batch-1')
        with pytest.raises(ValidationError):
            escrow.withdraw(professional.id, ['x'], '')


class TestEarningsRoutes:
    """Test the earnings HTTP surface"""

    def test_list_and_summary(self, client, pro_headers, earning):
        data = json.loads(client.get('/api/earnings', headers=pro_headers).data)
        assert [e['id'] for e in data['earnings']] == [earning.id]

        data = json.loads(client.get('/api/earnings/summary', headers=pro_headers).data)
        assert data['summary']['count'] == 1

    def test_withdraw_immature_via_api(self, client, pro_headers, earning):
        response = client.post('/api/earnings/withdrawals', headers=pro_headers, json={
            'batch_id': 'batch-api',
            'entry_ids': [earning.id],
        })

        assert response.status_code == 409
        assert json.loads(response.data)['code'] == 'illegal_state_transition'

    def test_withdraw_via_api(self, client, pro_headers, engagement):
        # Captured long ago, so the hold has elapsed by wall-clock time
        result = engagements.record_payment_captured(engagement.id, 'ref-old', 5250, now=datetime(2000, 1, 1))
        earning = result.earning

        response = client.post('/api/earnings/withdrawals', headers=pro_headers, json={
            'batch_id': 'batch-api',
            'entry_ids': [earning.id],
        })

        assert response.status_code == 200
        assert json.loads(response.data)['withdrawal']['entry_ids'] == [earning.id]
