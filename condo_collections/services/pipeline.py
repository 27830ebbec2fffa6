from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..core.errors import DataIntegrityError, LedgerUnavailableError, LedgerWriteError
from ..models.models import DispatchLog
from .audit import audit_log
from .delinquency import EscalationEvent, LifecycleState, StatusTransitionApplier, classify
from .dispatcher import DispatchKind, DispatchResult, DispatchStatus, NotificationDispatcher
from .email import EmailTransport, NotificationTransport
from .escalation import NO_ACTION, NoticeTier, UnitAssessment, actions_for_state, notice_tier_for_state, policy_for, renotify_action
from .ledger import (
    EscalationTrail,
    NotificationLedger,
    SqlEscalationTrail,
    SqlNotificationLedger,
    SqlUnitLedgerStore,
    UnitLedgerStore,
    billing_period,
)
from .recipients import resolve_cycle_recipients

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitFailure:
    unit_id: int
    unit_number: str
    stage: str
    error: str

    def describe(self) -> str:
        return f"Unit {self.unit_number or self.unit_id} {self.stage} failed: {self.error}"


@dataclass
class CycleSummary:
    cycle_timestamp: datetime
    trigger: str
    delinquent_unit_count: int = 0
    units_needing_action: int = 0
    units_checked: int = 0
    events: List[EscalationEvent] = field(default_factory=list)
    results: List[DispatchResult] = field(default_factory=list)
    unit_failures: List[UnitFailure] = field(default_factory=list)
    digest: Optional[DispatchResult] = None
    fatal_error: Optional[str] = None

    def _count(self, kind: DispatchKind) -> int:
        return sum(1 for result in self.results if result.kind == kind and result.sent)

    @property
    def owner_notices_sent(self) -> int:
        return self._count(DispatchKind.OWNER_NOTICE)

    @property
    def attorney_referrals_sent(self) -> int:
        return self._count(DispatchKind.ATTORNEY_REFERRAL)

    @property
    def board_alerts_sent(self) -> int:
        alerts = self._count(DispatchKind.BOARD_ALERT)
        if self.digest and self.digest.sent:
            alerts += 1
        return alerts

    @property
    def failed_dispatches(self) -> List[DispatchResult]:
        failed = [result for result in self.results if result.failed]
        if self.digest and self.digest.failed:
            failed.append(self.digest)
        return failed

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None


def assess_unit(snapshot, days_delinquent: int, computed: LifecycleState) -> UnitAssessment:
    state = LifecycleState.ATTORNEY if snapshot.current_status == LifecycleState.ATTORNEY else computed
    return UnitAssessment(
        snapshot=snapshot,
        days_delinquent=days_delinquent,
        state=state,
        action=actions_for_state(state) if state != LifecycleState.ATTORNEY else NO_ACTION,
    )


def check_units(store: UnitLedgerStore) -> List[UnitAssessment]:
    """Classify every unit without persisting or sending anything."""
    assessments: List[UnitAssessment] = []
    for snapshot in store.get_all_unit_snapshots():
        try:
            days, computed = classify(snapshot)
        except DataIntegrityError as exc:
            logger.warning("Skipping unit %s in check: %s", snapshot.label, exc)
            continue
        assessments.append(assess_unit(snapshot, days, computed))
    return assessments


def run_collection_cycle(
    store: UnitLedgerStore,
    ledger: NotificationLedger,
    trail: EscalationTrail,
    dispatcher: NotificationDispatcher,
    *,
    now: Optional[datetime] = None,
    trigger: str = "manual",
    auto_attorney_referral: Optional[bool] = None,
) -> CycleSummary:
    now = now or datetime.now(timezone.utc)
    summary = CycleSummary(cycle_timestamp=now, trigger=trigger)
    if auto_attorney_referral is None:
        auto_attorney_referral = settings.auto_attorney_referral
    applier = StatusTransitionApplier(store, auto_attorney_referral=auto_attorney_referral)

    try:
        snapshots = store.get_all_unit_snapshots()
    except LedgerUnavailableError as exc:
        logger.error("Collections cycle aborted: %s", exc)
        summary.fatal_error = str(exc)
        summary.digest = dispatcher.dispatch_board_digest([], [], failures=[f"Collections cycle aborted: {exc}"])
        return summary

    summary.units_checked = len(snapshots)
    assessments: List[UnitAssessment] = []
    period = billing_period(now)

    for snapshot in snapshots:
        try:
            days, computed = classify(snapshot)
        except DataIntegrityError as exc:
            logger.error("Skipping unit %s: %s", snapshot.label, exc)
            summary.unit_failures.append(UnitFailure(snapshot.unit_id, snapshot.unit_number, "classify", str(exc)))
            continue

        previous = snapshot.current_status
        try:
            event = applier.apply(
                previous,
                computed,
                snapshot.unit_id,
                days_delinquent=days,
                amount_owed=snapshot.total_owed,
                cycle_timestamp=now,
            )
        except LedgerWriteError as exc:
            # Not applied: no notice may go out for a transition the ledger does not hold.
            logger.error("Status write failed for unit %s: %s", snapshot.label, exc)
            summary.unit_failures.append(UnitFailure(snapshot.unit_id, snapshot.unit_number, "apply", str(exc)))
            continue

        if event is not None:
            summary.events.append(event)
            try:
                trail.record_event(event)
            except Exception as exc:
                logger.error("Could not record escalation event for unit %s: %s", snapshot.label, exc)
                summary.unit_failures.append(UnitFailure(snapshot.unit_id, snapshot.unit_number, "record_event", str(exc)))
            state = event.new_state
            action = policy_for(event)
        else:
            state = previous if previous == LifecycleState.ATTORNEY else computed
            tier = notice_tier_for_state(state)
            if tier is None:
                action = NO_ACTION
            else:
                # Referrals are one-off per escalation; owner notices repeat once per billing period.
                lookup_period = None if tier == NoticeTier.ATTORNEY else period
                try:
                    has_record = ledger.has_record(snapshot.unit_id, tier, lookup_period)
                except Exception as exc:
                    logger.exception("Notification ledger lookup failed for unit %s.", snapshot.label)
                    summary.unit_failures.append(
                        UnitFailure(snapshot.unit_id, snapshot.unit_number, "renotify_lookup", str(exc))
                    )
                    assessments.append(UnitAssessment(snapshot=snapshot, days_delinquent=days, state=state))
                    continue
                action = renotify_action(state, has_record)

        if action.renotify:
            logger.info("Unit %s has no %s notice on record; re-notifying.", snapshot.label, state.value)

        try:
            summary.results.extend(dispatcher.dispatch(snapshot.unit_id, action, snapshot, days_delinquent=days, now=now))
        except Exception as exc:
            logger.exception("Dispatch failed for unit %s.", snapshot.label)
            summary.unit_failures.append(UnitFailure(snapshot.unit_id, snapshot.unit_number, "dispatch", str(exc)))

        assessments.append(
            UnitAssessment(snapshot=snapshot, days_delinquent=days, state=state, action=action, event=event)
        )

    summary.delinquent_unit_count = sum(1 for item in assessments if item.is_delinquent)
    summary.units_needing_action = sum(1 for item in assessments if item.needs_action)
    summary.digest = dispatcher.dispatch_board_digest(
        summary.events,
        assessments,
        summary.results,
        failures=[failure.describe() for failure in summary.unit_failures],
    )

    logger.info(
        "Collections cycle (%s) complete: checked=%d delinquent=%d needing_action=%d events=%d "
        "owner_notices=%d referrals=%d failures=%d",
        trigger,
        summary.units_checked,
        summary.delinquent_unit_count,
        summary.units_needing_action,
        len(summary.events),
        summary.owner_notices_sent,
        summary.attorney_referrals_sent,
        len(summary.failed_dispatches) + len(summary.unit_failures),
    )
    return summary


def _record_dispatch_logs(session: Session, summary: CycleSummary) -> None:
    results = list(summary.results)
    if summary.digest and summary.digest.status != DispatchStatus.NOTHING_TO_REPORT:
        results.append(summary.digest)
    for result in results:
        session.add(
            DispatchLog(
                unit_id=result.unit_id,
                kind=result.kind.value,
                notice_tier=result.notice_tier.value if result.notice_tier else None,
                recipient=result.recipient,
                status=result.status.value,
                attempts=result.attempts,
                error=result.error,
                cycle_timestamp=summary.cycle_timestamp,
            )
        )
    session.commit()


def run_collections(
    session: Session,
    *,
    trigger: str = "manual",
    transport: Optional[NotificationTransport] = None,
    now: Optional[datetime] = None,
) -> CycleSummary:
    """Run one full cycle against the SQL ledger using the configured email transport."""
    try:
        recipients = resolve_cycle_recipients(session)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Recipient lookup failed; using configured board and attorney addresses.")
        recipients = resolve_cycle_recipients(None)
    ledger = SqlNotificationLedger(session)
    with NotificationDispatcher(transport or EmailTransport(), ledger, recipients) as dispatcher:
        summary = run_collection_cycle(
            SqlUnitLedgerStore(session),
            ledger,
            SqlEscalationTrail(session),
            dispatcher,
            now=now,
            trigger=trigger,
        )
    try:
        _record_dispatch_logs(session, summary)
        audit_log(
            db_session=session,
            actor_user_id=None,
            action=f"collections.cycle.{trigger}",
            target_entity_type="CollectionCycle",
            target_entity_id=summary.cycle_timestamp.isoformat(),
            after=summary_payload(summary),
        )
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to persist collections cycle audit records.")
    return summary


def summary_payload(summary: CycleSummary) -> dict:
    return {
        "cycle_timestamp": summary.cycle_timestamp,
        "trigger": summary.trigger,
        "delinquent_unit_count": summary.delinquent_unit_count,
        "units_needing_action": summary.units_needing_action,
        "units_checked": summary.units_checked,
        "events": summary.events,
        "owner_notices_sent": summary.owner_notices_sent,
        "attorney_referrals_sent": summary.attorney_referrals_sent,
        "board_alerts_sent": summary.board_alerts_sent,
        "failures": [result.describe() for result in summary.failed_dispatches]
        + [failure.describe() for failure in summary.unit_failures],
        "fatal_error": summary.fatal_error,
    }
