from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from ..config import settings
from ..core.errors import TemplateRenderError
from .delinquency import EscalationEvent, LifecycleState, UnitFinancialSnapshot
from .email import DeliveryResult, NotificationTransport
from .escalation import ActionSet, NoticeTier, UnitAssessment
from .ledger import NotificationLedger, billing_period
from .recipients import CycleRecipients
from .templates import (
    ATTORNEY_REFERRAL_TEMPLATE,
    BOARD_DIGEST_TEMPLATE,
    OWNER_NOTICE_TEMPLATES,
    REFERRAL_FAILURE_TEMPLATE,
    AssociationContext,
    DigestPayload,
    NoticePayload,
    ReferralPayload,
    format_money,
    payload_context,
    render_template,
)

logger = logging.getLogger(__name__)


class DispatchKind(str, Enum):
    OWNER_NOTICE = "owner_notice"
    ATTORNEY_REFERRAL = "attorney_referral"
    BOARD_ALERT = "board_alert"
    BOARD_DIGEST = "board_digest"


class DispatchStatus(str, Enum):
    SENT = "sent"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SUPPRESSED_NO_CONTACT = "suppressed_no_contact"
    NOTHING_TO_REPORT = "nothing_to_report"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    kind: DispatchKind
    status: DispatchStatus
    unit_id: Optional[int] = None
    unit_number: Optional[str] = None
    notice_tier: Optional[NoticeTier] = None
    recipient: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def failed(self) -> bool:
        return self.status == DispatchStatus.FAILED

    @property
    def sent(self) -> bool:
        return self.status == DispatchStatus.SENT

    def describe(self) -> str:
        target = f"Unit {self.unit_number or self.unit_id}" if self.unit_id is not None else "Board"
        tier = f" {self.notice_tier.value}" if self.notice_tier else ""
        detail = f": {self.error}" if self.error else ""
        return f"{target} {self.kind.value}{tier} {self.status.value}{detail}"


def association_context(recipients: CycleRecipients) -> AssociationContext:
    return AssociationContext(
        association_name=settings.association_name,
        association_address=settings.association_address,
        payment_portal_url=settings.payment_portal_url,
        board_contact_phone=settings.board_contact_phone,
        board_email=recipients.board_primary or "",
    )


def _bullets(lines: Sequence[str]) -> str:
    return "\n".join(f"- {line}" for line in lines) if lines else "None"


class NotificationDispatcher:
    def __init__(
        self,
        transport: NotificationTransport,
        ledger: NotificationLedger,
        recipients: CycleRecipients,
        *,
        association: Optional[AssociationContext] = None,
        timeout_seconds: Optional[float] = None,
        max_workers: int = 4,
    ) -> None:
        self.transport = transport
        self.ledger = ledger
        self.recipients = recipients
        self.association = association or association_context(recipients)
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.dispatch_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="collections-dispatch")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "NotificationDispatcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, recipient: str, subject: str, body: str, cc: Iterable[str] = ()) -> DeliveryResult:
        future = self._executor.submit(self.transport.send, recipient, subject, body, list(cc))
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            # A send already in flight keeps running; the message may still arrive.
            outcome = "never started" if future.cancel() else "delivery outcome unknown"
            logger.error("Dispatch of %r timed out after %ss; %s.", subject, self.timeout_seconds, outcome)
            return DeliveryResult(
                backend="timeout",
                status_code=None,
                request_id=None,
                error=f"Timed out after {self.timeout_seconds}s; {outcome}",
            )
        except Exception as exc:
            logger.exception("Transport raised while sending %r.", subject)
            return DeliveryResult(backend="error", status_code=None, request_id=None, error=str(exc))

    def dispatch(
        self,
        unit_id: int,
        action: ActionSet,
        snapshot: UnitFinancialSnapshot,
        *,
        days_delinquent: int = 0,
        now: Optional[datetime] = None,
    ) -> List[DispatchResult]:
        now = now or datetime.now(timezone.utc)
        results: List[DispatchResult] = []
        if action.owner_notice_tier:
            results.append(self._dispatch_owner_notice(unit_id, action.owner_notice_tier, snapshot, days_delinquent, now))
        if action.attorney_referral_required:
            referral = self._dispatch_attorney_referral(unit_id, snapshot, days_delinquent, now)
            results.append(referral)
            if referral.failed:
                results.append(self._send_referral_failure_alert(snapshot, days_delinquent, referral.error or "unknown error"))
        return results

    def _dispatch_owner_notice(
        self,
        unit_id: int,
        tier: NoticeTier,
        snapshot: UnitFinancialSnapshot,
        days_delinquent: int,
        now: datetime,
    ) -> DispatchResult:
        base = dict(
            kind=DispatchKind.OWNER_NOTICE,
            unit_id=unit_id,
            unit_number=snapshot.unit_number,
            notice_tier=tier,
            recipient=snapshot.contact_email,
        )
        if self.ledger.has_record(unit_id, tier, billing_period(now)):
            logger.info("Unit %s %s notice already sent this period; skipping.", snapshot.label, tier.value)
            return DispatchResult(status=DispatchStatus.SKIPPED_DUPLICATE, **base)

        if not snapshot.contact_email:
            # Keep the unit in the escalation trail even though the owner is unreachable.
            self.ledger.write_record(unit_id, tier, now)
            logger.warning("Unit %s has no contact email; %s notice suppressed.", snapshot.label, tier.value)
            return DispatchResult(status=DispatchStatus.SUPPRESSED_NO_CONTACT, **base)

        estimated_total = Decimal(snapshot.total_owed) + settings.attorney_fee_estimate + settings.court_cost_estimate
        payload = NoticePayload(
            owner_name=snapshot.owner_name or "Owner",
            unit_number=snapshot.label,
            amount_owed=format_money(snapshot.total_owed),
            days_delinquent=days_delinquent,
            estimated_total_with_fees=format_money(estimated_total),
        )
        try:
            message = render_template(OWNER_NOTICE_TEMPLATES[tier.value], payload_context(payload, self.association))
        except TemplateRenderError as exc:
            logger.error("Unit %s %s notice could not be rendered: %s", snapshot.label, tier.value, exc)
            return DispatchResult(status=DispatchStatus.FAILED, error=str(exc), **base)

        delivery = self._send(snapshot.contact_email, message["subject"], message["body"])
        if not delivery.ok:
            logger.error("Unit %s %s notice failed: %s", snapshot.label, tier.value, delivery.error)
            return DispatchResult(status=DispatchStatus.FAILED, error=delivery.error, attempts=delivery.attempts, **base)

        self.ledger.write_record(unit_id, tier, now)
        logger.info("Sent %s notice to Unit %s.", tier.value, snapshot.label)
        return DispatchResult(status=DispatchStatus.SENT, attempts=delivery.attempts, **base)

    def _contact_history(self, unit_id: int) -> str:
        records = self.ledger.records_for_unit(unit_id)
        lines = [
            f"{record.notice_tier} notice recorded {record.sent_at:%Y-%m-%d}"
            for record in records
            if record.notice_tier != NoticeTier.ATTORNEY.value
        ]
        return _bullets(lines) if lines else "- No prior notices on record"

    def _dispatch_attorney_referral(
        self,
        unit_id: int,
        snapshot: UnitFinancialSnapshot,
        days_delinquent: int,
        now: datetime,
    ) -> DispatchResult:
        tier = NoticeTier.ATTORNEY
        base = dict(
            kind=DispatchKind.ATTORNEY_REFERRAL,
            unit_id=unit_id,
            unit_number=snapshot.unit_number,
            notice_tier=tier,
            recipient=self.recipients.attorney,
        )
        if self.ledger.has_record(unit_id, tier, billing_period(now)):
            logger.info("Unit %s attorney referral already sent this period; skipping.", snapshot.label)
            return DispatchResult(status=DispatchStatus.SKIPPED_DUPLICATE, **base)
        if not self.recipients.attorney:
            return DispatchResult(status=DispatchStatus.FAILED, error="No attorney recipient configured.", **base)

        payload = ReferralPayload(
            attorney_name=self.recipients.attorney_name,
            owner_name=snapshot.owner_name or "Owner",
            unit_number=snapshot.label,
            amount_owed=format_money(snapshot.total_owed),
            days_delinquent=days_delinquent,
            maintenance_arrears=format_money(snapshot.maintenance_balance),
            assessment_arrears=format_money(snapshot.assessment_balance),
            late_fees=format_money(snapshot.late_fee_balance),
            owner_email=snapshot.contact_email or "Not on file",
            owner_phone=snapshot.contact_phone or "Not on file",
            last_payment_date=(
                f"{snapshot.last_payment_at:%Y-%m-%d}" if snapshot.last_payment_at else "No payment on record"
            ),
            contact_history=self._contact_history(unit_id),
        )
        try:
            message = render_template(ATTORNEY_REFERRAL_TEMPLATE, payload_context(payload, self.association))
        except TemplateRenderError as exc:
            return DispatchResult(status=DispatchStatus.FAILED, error=str(exc), **base)

        cc = self.recipients.board[:1]
        delivery = self._send(self.recipients.attorney, message["subject"], message["body"], cc=cc)
        if not delivery.ok:
            logger.error("Attorney referral for Unit %s failed: %s", snapshot.label, delivery.error)
            return DispatchResult(status=DispatchStatus.FAILED, error=delivery.error, attempts=delivery.attempts, **base)

        self.ledger.write_record(unit_id, tier, now)
        logger.info("Sent attorney referral for Unit %s.", snapshot.label)
        return DispatchResult(status=DispatchStatus.SENT, attempts=delivery.attempts, **base)

    def _send_referral_failure_alert(
        self, snapshot: UnitFinancialSnapshot, days_delinquent: int, error: str
    ) -> DispatchResult:
        base = dict(
            kind=DispatchKind.BOARD_ALERT,
            unit_id=snapshot.unit_id,
            unit_number=snapshot.unit_number,
            notice_tier=NoticeTier.ATTORNEY,
            recipient=self.recipients.board_primary,
        )
        if not self.recipients.board_primary:
            return DispatchResult(status=DispatchStatus.FAILED, error="No board recipient configured.", **base)
        payload = NoticePayload(
            owner_name=snapshot.owner_name or "Owner",
            unit_number=snapshot.label,
            amount_owed=format_money(snapshot.total_owed),
            days_delinquent=days_delinquent,
            estimated_total_with_fees="",
        )
        context = payload_context(
            payload,
            self.association,
            attorney_name=self.recipients.attorney_name,
            error=error,
        )
        message = render_template(REFERRAL_FAILURE_TEMPLATE, context)
        delivery = self._send(
            self.recipients.board_primary,
            message["subject"],
            message["body"],
            cc=self.recipients.board[1:] + self.recipients.board_cc,
        )
        status = DispatchStatus.SENT if delivery.ok else DispatchStatus.FAILED
        if delivery.ok:
            logger.warning("Board alerted that the attorney referral for Unit %s failed.", snapshot.label)
        else:
            logger.error("Board alert for failed referral of Unit %s also failed: %s", snapshot.label, delivery.error)
        return DispatchResult(status=status, error=delivery.error, attempts=delivery.attempts, **base)

    def dispatch_board_digest(
        self,
        events: Sequence[EscalationEvent],
        assessments: Sequence[UnitAssessment],
        results: Sequence[DispatchResult] = (),
        failures: Sequence[str] = (),
    ) -> DispatchResult:
        base = dict(kind=DispatchKind.BOARD_DIGEST, recipient=self.recipients.board_primary)
        labels = {item.snapshot.unit_id: item.snapshot for item in assessments}

        def describe_event(event: EscalationEvent) -> str:
            snapshot = labels.get(event.unit_id)
            name = f" ({snapshot.owner_name})" if snapshot and snapshot.owner_name else ""
            unit = snapshot.label if snapshot else event.unit_id
            return (
                f"Unit {unit}{name}: {event.previous_state.value} -> {event.new_state.value}, "
                f"{format_money(event.amount_owed)} owed, {event.days_delinquent} days"
            )

        forward = [event for event in events if not event.is_recovery]
        new_delinquencies = [event for event in forward if event.previous_state == LifecycleState.CURRENT]
        escalations = [event for event in forward if event.previous_state != LifecycleState.CURRENT]
        recoveries = [event for event in events if event.is_recovery]
        referrals = [result for result in results if result.kind == DispatchKind.ATTORNEY_REFERRAL and result.sent]
        failed = [result.describe() for result in results if result.failed] + list(failures)

        delinquent = [item for item in assessments if item.is_delinquent]
        needing_action = [item for item in assessments if item.needs_action]
        flagged = [item for item in assessments if item.action.board_alert_required]

        if not (needing_action or events or failed or flagged):
            logger.info("Board digest skipped: nothing to report this cycle.")
            return DispatchResult(status=DispatchStatus.NOTHING_TO_REPORT, **base)
        if not self.recipients.board_primary:
            return DispatchResult(status=DispatchStatus.FAILED, error="No board recipient configured.", **base)

        payload = DigestPayload(
            unit_count=len(needing_action),
            new_delinquencies=_bullets([describe_event(event) for event in new_delinquencies]),
            escalations=_bullets([describe_event(event) for event in escalations]),
            recoveries=_bullets([describe_event(event) for event in recoveries]),
            attorney_referrals=_bullets(
                [f"Unit {result.unit_number or result.unit_id} referred to counsel" for result in referrals]
            ),
            delivery_failures=_bullets(failed),
            total_delinquent=len(delinquent),
            total_owed=format_money(sum((Decimal(item.snapshot.total_owed) for item in delinquent), Decimal("0"))),
            count_30_60=sum(1 for item in delinquent if 30 <= item.days_delinquent < 60),
            count_60_90=sum(1 for item in delinquent if 60 <= item.days_delinquent < 90),
            count_90_plus=sum(1 for item in delinquent if item.days_delinquent >= 90),
            action_items=_bullets(
                [f"Unit {item.snapshot.label}: {item.recommended_action}" for item in needing_action]
            ),
        )
        message = render_template(BOARD_DIGEST_TEMPLATE, payload_context(payload, self.association))
        delivery = self._send(
            self.recipients.board_primary,
            message["subject"],
            message["body"],
            cc=self.recipients.board[1:] + self.recipients.board_cc,
        )
        if not delivery.ok:
            logger.error("Board digest delivery failed: %s", delivery.error)
            return DispatchResult(status=DispatchStatus.FAILED, error=delivery.error, attempts=delivery.attempts, **base)
        logger.info(
            "Board digest sent: %d units need action, %d events, %d failures.",
            len(needing_action),
            len(events),
            len(failed),
        )
        return DispatchResult(status=DispatchStatus.SENT, attempts=delivery.attempts, **base)
