import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from condo_collections.services.delinquency import EscalationEvent, LifecycleState
from condo_collections.services.dispatcher import DispatchKind, DispatchStatus, NotificationDispatcher
from condo_collections.services.email import DeliveryResult
from condo_collections.services.escalation import ActionSet, NoticeTier, UnitAssessment
from condo_collections.services.recipients import CycleRecipients

NOW = datetime(2026, 10, 19, 11, 0, tzinfo=timezone.utc)


@pytest.fixture
def dispatcher(fake_transport, notification_ledger, recipients):
    with NotificationDispatcher(fake_transport, notification_ledger, recipients, timeout_seconds=5) as instance:
        yield instance


def test_owner_notice_sent_once_per_period(dispatcher, fake_transport, notification_ledger, snapshot_factory):
    snapshot = snapshot_factory(unit_id=3, total_owed="1000", email="owner3@example.com")
    action = ActionSet(owner_notice_tier=NoticeTier.DAY_90, board_alert_required=True)

    first = dispatcher.dispatch(3, action, snapshot, days_delinquent=60, now=NOW)
    second = dispatcher.dispatch(3, action, snapshot, days_delinquent=60, now=NOW.replace(day=28))

    assert [result.status for result in first] == [DispatchStatus.SENT]
    assert [result.status for result in second] == [DispatchStatus.SKIPPED_DUPLICATE]
    assert len(fake_transport.to("owner3@example.com")) == 1
    assert notification_ledger.tiers_for(3) == ["90_day"]


def test_owner_notice_resent_in_next_period(dispatcher, fake_transport, snapshot_factory):
    snapshot = snapshot_factory(unit_id=3, total_owed="500", email="owner3@example.com")
    action = ActionSet(owner_notice_tier=NoticeTier.DAY_60)

    dispatcher.dispatch(3, action, snapshot, now=NOW)
    results = dispatcher.dispatch(3, action, snapshot, now=datetime(2026, 11, 1, tzinfo=timezone.utc))

    assert results[0].sent
    assert len(fake_transport.to("owner3@example.com")) == 2


def test_missing_email_records_without_sending(dispatcher, fake_transport, notification_ledger, snapshot_factory):
    snapshot = snapshot_factory(unit_id=8, total_owed="100", email=None)

    results = dispatcher.dispatch(8, ActionSet(owner_notice_tier=NoticeTier.DAY_30), snapshot, now=NOW)

    assert results[0].status == DispatchStatus.SUPPRESSED_NO_CONTACT
    assert fake_transport.sent == []
    assert notification_ledger.tiers_for(8) == ["30_day"]


def test_failed_send_writes_no_record(dispatcher, fake_transport, notification_ledger, snapshot_factory):
    fake_transport.failing_recipients.add("owner5@example.com")
    snapshot = snapshot_factory(unit_id=5, total_owed="100", email="owner5@example.com")

    results = dispatcher.dispatch(5, ActionSet(owner_notice_tier=NoticeTier.DAY_30), snapshot, now=NOW)

    assert results[0].failed
    assert results[0].error == "mailbox unavailable"
    assert results[0].attempts == 3
    assert notification_ledger.records == []


def test_attorney_referral_carries_breakdown_and_history(dispatcher, fake_transport, notification_ledger, snapshot_factory):
    notification_ledger.write_record(4, NoticeTier.DAY_90, datetime(2026, 9, 2, tzinfo=timezone.utc))
    snapshot = snapshot_factory(unit_id=4, total_owed="1500", email="owner4@example.com")

    results = dispatcher.dispatch(
        4, ActionSet(board_alert_required=True, attorney_referral_required=True), snapshot, days_delinquent=90, now=NOW
    )

    assert [result.kind for result in results] == [DispatchKind.ATTORNEY_REFERRAL]
    assert results[0].sent
    (message,) = fake_transport.to("counsel@example.com")
    assert message.cc == ("board@example.com",)
    assert "$1,500.00" in message.body
    assert "90_day notice recorded 2026-09-02" in message.body
    assert "owner4@example.com" in message.body
    assert notification_ledger.tiers_for(4) == ["90_day", "attorney"]


def test_failed_referral_alerts_board_immediately(dispatcher, fake_transport, notification_ledger, snapshot_factory):
    fake_transport.failing_recipients.add("counsel@example.com")
    snapshot = snapshot_factory(unit_id=6, total_owed="2000")

    results = dispatcher.dispatch(
        6, ActionSet(board_alert_required=True, attorney_referral_required=True), snapshot, days_delinquent=120, now=NOW
    )

    assert [(result.kind, result.status) for result in results] == [
        (DispatchKind.ATTORNEY_REFERRAL, DispatchStatus.FAILED),
        (DispatchKind.BOARD_ALERT, DispatchStatus.SENT),
    ]
    (alert,) = fake_transport.to("board@example.com")
    assert "URGENT" in alert.subject
    assert "mailbox unavailable" in alert.body
    assert notification_ledger.records == []


def test_referral_without_attorney_is_failed(fake_transport, notification_ledger, snapshot_factory):
    recipients = CycleRecipients(board=("board@example.com",), attorney=None)
    with NotificationDispatcher(fake_transport, notification_ledger, recipients, timeout_seconds=5) as dispatcher:
        results = dispatcher.dispatch(
            2, ActionSet(attorney_referral_required=True), snapshot_factory(unit_id=2, total_owed="1500"), now=NOW
        )
    assert results[0].failed
    assert "attorney" in results[0].error.lower()
    assert results[1].kind == DispatchKind.BOARD_ALERT


def test_slow_transport_times_out(notification_ledger, recipients, snapshot_factory):
    release = threading.Event()

    class SlowTransport:
        def send(self, recipient, subject, body, cc=None):
            release.wait(5)
            return DeliveryResult(backend="slow", status_code=200, request_id=None, error=None)

    with NotificationDispatcher(SlowTransport(), notification_ledger, recipients, timeout_seconds=0.05) as dispatcher:
        try:
            results = dispatcher.dispatch(
                1, ActionSet(owner_notice_tier=NoticeTier.DAY_30), snapshot_factory(total_owed="10"), now=NOW
            )
        finally:
            release.set()

    assert results[0].failed
    assert "Timed out" in results[0].error
    assert "delivery outcome unknown" in results[0].error
    assert "delivery outcome unknown" in results[0].describe()
    assert notification_ledger.records == []


def test_transport_exception_becomes_failed_result(notification_ledger, recipients, snapshot_factory):
    class BrokenTransport:
        def send(self, recipient, subject, body, cc=None):
            raise RuntimeError("socket closed")

    with NotificationDispatcher(BrokenTransport(), notification_ledger, recipients, timeout_seconds=5) as dispatcher:
        results = dispatcher.dispatch(
            1, ActionSet(owner_notice_tier=NoticeTier.DAY_30), snapshot_factory(total_owed="10"), now=NOW
        )
    assert results[0].failed
    assert results[0].error == "socket closed"


def test_digest_reports_recoveries_and_failures(dispatcher, fake_transport, snapshot_factory):
    recovered = snapshot_factory(unit_id=1, total_owed="0")
    escalated = snapshot_factory(unit_id=2, total_owed="1000")
    events = [
        EscalationEvent(1, LifecycleState.PENDING, LifecycleState.CURRENT, 0, Decimal("0"), NOW),
        EscalationEvent(2, LifecycleState.TIER_30_60, LifecycleState.TIER_60_90, 60, Decimal("1000"), NOW),
    ]
    assessments = [
        UnitAssessment(recovered, 0, LifecycleState.CURRENT, ActionSet(recovered=True), events[0]),
        UnitAssessment(
            escalated,
            60,
            LifecycleState.TIER_60_90,
            ActionSet(owner_notice_tier=NoticeTier.DAY_90, board_alert_required=True),
            events[1],
        ),
    ]

    result = dispatcher.dispatch_board_digest(events, assessments, failures=["Unit 109 classify failed: bad charge"])

    assert result.kind == DispatchKind.BOARD_DIGEST
    assert result.sent
    (digest,) = fake_transport.to("board@example.com")
    recovered_section = digest.body.split("RECOVERED:")[1].split("ATTORNEY REFERRALS:")[0]
    assert "Unit 101" in recovered_section
    assert "pending -> current" in recovered_section
    assert "Unit 102" in digest.body.split("ESCALATIONS:")[1].split("RECOVERED:")[0]
    assert "bad charge" in digest.body
    assert "Units 60-90 days: 1" in digest.body


def test_digest_skipped_when_nothing_to_report(dispatcher, fake_transport, snapshot_factory):
    quiet = UnitAssessment(snapshot_factory(total_owed="0"), 0, LifecycleState.CURRENT)
    result = dispatcher.dispatch_board_digest([], [quiet])
    assert result.status == DispatchStatus.NOTHING_TO_REPORT
    assert fake_transport.sent == []
