import logging
import smtplib
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Tuple

from ..config import settings
from ..core.errors import TransportError

logger = logging.getLogger(__name__)

MAX_LOG_RECIPIENTS = 3
MAX_SUBJECT_PREVIEW = 12


@dataclass
class DeliveryResult:
    backend: str
    status_code: Optional[int]
    request_id: Optional[str]
    error: Optional[str]
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None


class NotificationTransport(Protocol):
    def send(self, recipient: str, subject: str, body: str, cc: Optional[Iterable[str]] = None) -> DeliveryResult: ...


def _mask_email(value: str) -> str:
    if "@" not in value:
        return "***"
    name, domain = value.split("@", 1)
    if not name:
        masked = "***"
    elif len(name) <= 2:
        masked = f"{name[0]}***"
    else:
        masked = f"{name[0]}***{name[-1]}"
    return f"{masked}@{domain}"


def _mask_subject(subject: str) -> str:
    if not subject:
        return ""
    preview = subject[:MAX_SUBJECT_PREVIEW]
    return f"{preview}... (len={len(subject)})"


def _resolve_backend() -> str:
    return (settings.email_backend or "local").strip().strip("'\"").lower()


def log_email_configuration() -> None:
    logger.info(
        "Email configuration: backend=%s sendgrid_api_key=%s email_host=%s email_host_user=%s "
        "email_host_password=%s email_from_address=%s email_reply_to=%s",
        _resolve_backend(),
        bool(settings.sendgrid_api_key),
        bool(settings.email_host),
        bool(settings.email_host_user),
        bool(settings.email_host_password),
        bool(settings.email_from_address),
        bool(settings.email_reply_to),
    )


def _normalize_recipients(recipients: Iterable[str]) -> List[str]:
    normalized: List[str] = []
    seen = set()
    for email in recipients:
        if not email:
            continue
        cleaned = email.strip()
        if not cleaned:
            continue
        lowered = cleaned.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        normalized.append(cleaned)
    return normalized


def _resolve_sender() -> Tuple[str, str]:
    from_address = settings.email_from_address or "board@heritagecondo.example"
    display_name = settings.email_from_name or settings.association_name
    return from_address, display_name


def _write_local_email(subject: str, body: str, recipients: List[str], cc: List[str]) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    safe_subject = "".join(ch for ch in subject if ch.isalnum() or ch in (" ", "_", "-")).strip() or "email"
    filename = f"{timestamp}_{safe_subject.replace(' ', '_')[:80]}.txt"
    output_dir = Path(settings.email_output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    lines = [
        f"Subject: {subject}",
        f"Recipients: {', '.join(recipients)}",
    ]
    if cc:
        lines.append(f"Cc: {', '.join(cc)}")
    lines.extend(["", body])
    path.write_text("\n".join(lines))
    logger.info("[LOCAL EMAIL] %s", path)
    return str(path)


def _send_via_sendgrid(subject: str, body: str, recipients: List[str], cc: List[str]) -> DeliveryResult:
    from_address, display_name = _resolve_sender()
    if not settings.sendgrid_api_key or not from_address:
        raise TransportError("SendGrid backend requires SENDGRID_API_KEY and EMAIL_FROM_ADDRESS.")

    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Email, Mail

    reply_to = settings.email_reply_to or from_address
    message = Mail(
        from_email=Email(email=from_address, name=display_name),
        to_emails=recipients,
        subject=subject,
        plain_text_content=body,
    )
    if reply_to:
        message.reply_to = Email(email=reply_to)
    for address in cc:
        message.add_cc(address)
    client = SendGridAPIClient(settings.sendgrid_api_key)
    try:
        response = client.send(message)
    except Exception as exc:
        status_code = getattr(exc, "status_code", None)
        request_id = None
        headers = getattr(exc, "headers", None) or {}
        if isinstance(headers, dict):
            request_id = headers.get("X-Message-Id") or headers.get("X-Request-Id")
        logger.warning(
            "SendGrid dispatch failed (status=%s request_id=%s): %s",
            status_code,
            request_id,
            exc,
        )
        raise TransportError(f"SendGrid rejected message (status={status_code}): {exc}") from exc

    request_id = None
    if isinstance(response.headers, dict):
        request_id = response.headers.get("X-Message-Id") or response.headers.get("X-Request-Id")
    logger.info(
        "Sent message via SendGrid to %d recipients (status=%s request_id=%s).",
        len(recipients),
        response.status_code,
        request_id,
    )
    return DeliveryResult(backend="sendgrid", status_code=response.status_code, request_id=request_id, error=None)


def _send_via_smtp(subject: str, body: str, recipients: List[str], cc: List[str]) -> DeliveryResult:
    if not settings.email_host:
        raise TransportError("SMTP backend requires EMAIL_HOST.")
    if not settings.email_host_user or not settings.email_host_password:
        raise TransportError("SMTP backend requires EMAIL_HOST_USER and EMAIL_HOST_PASSWORD.")
    from_address, display_name = _resolve_sender()

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((display_name, from_address))
    message["To"] = ", ".join(recipients)
    if cc:
        message["Cc"] = ", ".join(cc)
    reply_to = settings.email_reply_to or from_address
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(body)

    port = settings.email_port or 587
    context = ssl.create_default_context()
    try:
        with smtplib.SMTP(settings.email_host, port, timeout=settings.dispatch_timeout_seconds) as connection:
            connection.ehlo()
            if settings.email_use_tls:
                connection.starttls(context=context)
                connection.ehlo()
            connection.login(settings.email_host_user, settings.email_host_password)
            connection.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        raise TransportError(f"SMTP delivery failed: {exc}") from exc
    logger.info("Sent message via SMTP to %d recipients.", len(recipients))
    return DeliveryResult(backend="smtp", status_code=250, request_id=None, error=None)


def _log_send_attempt(backend: str, subject: str, recipients: List[str], attempt: int) -> None:
    masked_recipients = [_mask_email(addr) for addr in recipients[:MAX_LOG_RECIPIENTS]]
    if len(recipients) > MAX_LOG_RECIPIENTS:
        masked_recipients.append(f"+{len(recipients) - MAX_LOG_RECIPIENTS} more")
    logger.info(
        "Dispatching email backend=%s attempt=%s to=%s subject=%s",
        backend,
        attempt,
        masked_recipients,
        _mask_subject(subject),
    )


def _deliver_once(backend: str, subject: str, body: str, recipients: List[str], cc: List[str]) -> DeliveryResult:
    if backend == "local":
        _write_local_email(subject, body, recipients, cc)
        return DeliveryResult(backend="local", status_code=200, request_id=None, error=None)
    if backend == "sendgrid":
        return _send_via_sendgrid(subject, body, recipients, cc)
    if backend in {"smtp", "sendgrid_smtp"}:
        return _send_via_smtp(subject, body, recipients, cc)

    logger.warning("Unknown EMAIL_BACKEND '%s'. Defaulting to local stub.", backend)
    _write_local_email(subject, body, recipients, cc)
    return DeliveryResult(backend="local", status_code=200, request_id=None, error=None)


class EmailTransport:
    """Email delivery through the configured backend, retried on transport errors."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep=time.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.transport_max_attempts)
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.transport_retry_backoff_seconds
        )
        self._sleep = sleep

    def send(self, recipient: str, subject: str, body: str, cc: Optional[Iterable[str]] = None) -> DeliveryResult:
        recipients = _normalize_recipients([recipient])
        backend = _resolve_backend()
        if not recipients:
            logger.info("Email dispatch skipped: no recipients (subject=%s).", _mask_subject(subject))
            return DeliveryResult(backend=backend, status_code=None, request_id=None, error="No recipients provided.", attempts=0)
        cc_list = [addr for addr in _normalize_recipients(cc or []) if addr.lower() != recipients[0].lower()]

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            _log_send_attempt(backend, subject, recipients, attempt)
            try:
                result = _deliver_once(backend, subject, body, recipients, cc_list)
            except (TransportError, OSError) as exc:
                last_error = str(exc)
                logger.warning("Email dispatch attempt %s/%s failed: %s", attempt, self.max_attempts, exc)
                if attempt < self.max_attempts and self.backoff_seconds:
                    self._sleep(self.backoff_seconds * attempt)
                continue
            result.attempts = attempt
            return result

        logger.error(
            "Email dispatch to %s exhausted %s attempts (backend=%s).",
            _mask_email(recipients[0]),
            self.max_attempts,
            backend,
        )
        return DeliveryResult(backend=backend, status_code=None, request_id=None, error=last_error, attempts=self.max_attempts)
