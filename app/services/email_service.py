from datetime import datetime, timezone
import logging
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.email_log import EmailLog

logger = logging.getLogger(__name__)


def queue_email(db: Session, to_email: str, subject: str, body: str, html: str | None = None,
                related_booking_id: int | None = None) -> int:
    """Queue and attempt immediate send. Body is stored so the worker can retry on failure."""
    log = EmailLog(
        to_email=to_email,
        subject=subject,
        body=body,
        html_body=html,
        status="queued",
        related_booking_id=related_booking_id,
    )
    db.add(log)
    db.commit()

    if not settings.EMAIL_ENABLED:
        return log.id

    log.attempts = (log.attempts or 0) + 1
    try:
        send_email(to_email, subject, body, html)
        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)
    except Exception as e:
        # Worker will retry via process_email_queue
        logger.warning("Email to %s failed (%s); left for retry", to_email, e)
        log.status = "failed"
        log.error = str(e)
    db.commit()
    return log.id


def send_email(to_email: str, subject: str, body: str, html: str | None = None):
    """Send via SMTP (MailHog recommended for local)."""
    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)
    if html:
        msg.add_alternative(html, subtype="html")

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.starttls()
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Process up to `limit` queued or failed emails; retry send and update status. Returns counts."""
    if not settings.EMAIL_ENABLED:
        return {"processed": 0, "sent": 0, "failed": 0, "skipped": True}
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.body.isnot(None), EmailLog.body != "")
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for log in pending:
        log.attempts = (log.attempts or 0) + 1
        try:
            send_email(log.to_email, log.subject, log.body, log.html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            log.error = None
            sent += 1
        except Exception as e:
            logger.warning("Retry of email %s failed: %s", log.id, e)
            log.status = "failed"
            log.error = str(e)
            failed += 1
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}
