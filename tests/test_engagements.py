"""
Engagement lifecycle and payment capture tests.
"""
import json
from datetime import datetime, timedelta

import pytest

from errors import Conflict, Forbidden, IllegalStateTransition, NotFoundError, ValidationError
from models import db, Earning, Engagement, PaymentCapture
from services import engagements

CAPTURED_AT = datetime(2030, 5, 1, 12, 0, 0)


class TestCompleteAndCancel:
    """Test the active -> completed | cancelled state machine"""

    def test_professional_completes(self, client, pro_headers, engagement):
        response = client.post(f'/api/engagements/{engagement.id}/complete', headers=pro_headers)

        assert response.status_code == 200
        data = json.loads(response.data)['engagement']
        assert data['status'] == 'completed'
        assert data['completed_at'] is not None

    def test_organizer_cannot_complete(self, client, organizer_headers, engagement):
        response = client.post(f'/api/engagements/{engagement.id}/complete', headers=organizer_headers)

        assert response.status_code == 403

    def test_complete_twice_is_illegal(self, engagement, professional):
        engagements.complete(engagement.id, professional.id)
        with pytest.raises(IllegalStateTransition):
            engagements.complete(engagement.id, professional.id)

    def test_complete_while_unpaid_defers_earning(self, engagement, professional):
        """Completing before capture leaves payment pending; the earning waits for capture"""
        completed = engagements.complete(engagement.id, professional.id)

        assert completed.status == 'completed'
        assert completed.payment_status == 'pending'
        assert Earning.query.count() == 0

        result = engagements.record_payment_captured(engagement.id, 'ref-late', 5250, now=CAPTURED_AT)
        assert result.applied is True
        assert result.earning is not None
        assert Earning.query.filter_by(engagement_id=engagement.id).count() == 1

    def test_complete_after_capture_keeps_single_earning(self, engagement, professional):
        engagements.record_payment_captured(engagement.id, 'ref-early', 5250, now=CAPTURED_AT)
        engagements.complete(engagement.id, professional.id)

        assert Earning.query.filter_by(engagement_id=engagement.id).count() == 1

    def test_either_party_cancels(self, client, organizer_headers, organizer, engagement):
        response = client.post(f'/api/engagements/{engagement.id}/cancel', headers=organizer_headers)

        assert response.status_code == 200
        data = json.loads(response.data)['engagement']
        assert data['status'] == 'cancelled'
        assert data['cancelled_by'] == organizer.id

    def test_cancel_completed_is_illegal(self, engagement, professional, organizer):
        engagements.complete(engagement.id, professional.id)
        with pytest.raises(IllegalStateTransition):
            engagements.cancel(engagement.id, organizer.id)

    def test_paid_engagement_cannot_be_cancelled(self, engagement, organizer):
        engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)
        with pytest.raises(IllegalStateTransition):
            engagements.cancel(engagement.id, organizer.id)

    def test_outsider_forbidden(self, engagement, other_professional):
        with pytest.raises(Forbidden):
            engagements.cancel(engagement.id, other_professional.id)

    def test_lost_race_raises_conflict(self, monkeypatch, engagement, professional, organizer):
        """Complete racing a cancel: the slower call sees a Conflict"""
        stale = db.session.get(Engagement, engagement.id)
        db.session.refresh(stale)
        db.session.expunge(stale)

        engagements.cancel(engagement.id, organizer.id)

        monkeypatch.setattr(engagements, 'get_engagement', lambda engagement_id, user_id=None: stale)
        with pytest.raises(Conflict):
            engagements.complete(engagement.id, professional.id)

        assert db.session.get(Engagement, engagement.id).status == 'cancelled'

    def test_unknown_engagement(self, client, pro_headers):
        response = client.get('/api/engagements/missing', headers=pro_headers)
        assert response.status_code == 404


class TestListEngagements:
    """Test engagement listing for both parties"""

    def test_both_parties_see_engagement(self, client, organizer_headers, pro_headers, engagement):
        for headers in (organizer_headers, pro_headers):
            data = json.loads(client.get('/api/engagements', headers=headers).data)
            assert [e['id'] for e in data['engagements']] == [engagement.id]

    def test_filters(self, engagement, professional, organizer):
        assert engagements.list_engagements(professional.id, role='professional') == [engagement]
        assert engagements.list_engagements(organizer.id, role='professional') == []
        assert engagements.list_engagements(organizer.id, status='completed') == []

    def test_invalid_status(self, client, pro_headers):
        response = client.get('/api/engagements?status=paused', headers=pro_headers)
        assert response.status_code == 400


class TestPaymentCapture:
    """Test the inbound payment capture handoff to escrow"""

    def test_capture_creates_escrow_entry(self, engagement, app):
        """Capture of 5250 on a 5000 engagement escrows 5000 gross at the 5% fee"""
        result = engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)

        assert result.applied is True
        assert result.engagement.payment_status == 'paid'
        earning = result.earning
        assert float(earning.gross_amount) == 5000.0
        assert float(earning.service_fee) == 250.0
        assert float(earning.net_amount) == 4750.0
        assert earning.status == 'pending'
        assert earning.available_date == CAPTURED_AT + timedelta(days=app.config['ESCROW_HOLD_DAYS'])

    def test_capture_is_idempotent_on_reference(self, engagement):
        first = engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)
        again = engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)

        assert again.duplicate is True
        assert again.applied is False
        assert again.earning.id == first.earning.id
        assert PaymentCapture.query.count() == 1
        assert Earning.query.count() == 1

    def test_second_reference_on_paid_engagement_ignored(self, engagement):
        engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)
        result = engagements.record_payment_captured(engagement.id, 'ref-2', 5250, now=CAPTURED_AT)

        assert result.applied is False
        assert result.capture.outcome == 'ignored'
        assert Earning.query.count() == 1

    def test_cancelled_engagement_never_earns(self, engagement, organizer):
        engagements.cancel(engagement.id, organizer.id)
        result = engagements.record_payment_captured(engagement.id, 'ref-1', 5250, now=CAPTURED_AT)

        assert result.applied is False
        assert result.engagement.status == 'cancelled'
        assert result.engagement.payment_status == 'pending'
        assert result.earning is None
        assert Earning.query.count() == 0

    def test_fee_rate_from_config(self, app, engagement):
        app.config['ESCROW_FEE_RATE'] = 0.1
        result = engagements.record_payment_captured(engagement.id, 'ref-1', 5000, now=CAPTURED_AT)

        assert float(result.earning.service_fee) == 500.0
        assert float(result.earning.net_amount) == 4500.0

    def test_invalid_amount(self, engagement):
        with pytest.raises(ValidationError):
            engagements.record_payment_captured(engagement.id, 'ref-1', -5)

    def test_unknown_engagement(self, app):
        with pytest.raises(NotFoundError):
            engagements.record_payment_captured('missing', 'ref-1', 100)
