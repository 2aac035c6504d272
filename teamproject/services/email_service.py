"""
Team Project Manager
Email Service — outbound email transport.

Every attempt is recorded in EmailLog: the row is written as PENDING before
delivery and updated to SENT or FAILED afterwards.  ``send`` never raises;
it answers True/False.

Transport selection (per call, from app config):
    MAILJET_API_KEY + MAILJET_API_SECRET   Mailjet v3.1 HTTP API
    MAIL_SERVER                            SMTP
    neither                                log-only mode (recorded as SENT)

Testability: pass a mock ``session`` to EmailService() to intercept the
Mailjet HTTP call without network access.
"""

from __future__ import annotations

import json
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import requests
from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from teamproject.models import db
from teamproject.models.auth import User
from teamproject.models.notification import EmailLog
from teamproject.models.project import Project

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised by a transport when the provider rejects the message."""


class EmailService:
    """Sends HTML email through the configured transport and logs every attempt."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @staticmethod
    def transport_name() -> str:
        cfg = current_app.config
        if cfg.get("MAILJET_API_KEY") and cfg.get("MAILJET_API_SECRET"):
            return "mailjet"
        if cfg.get("MAIL_SERVER"):
            return "smtp"
        return "log"

    def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        user_id: int | None = None,
        metadata: dict | None = None,
    ) -> bool:
        """Send one email.  Returns False on any failure, never raises."""
        try:
            log = EmailLog(
                to_email=to,
                subject=subject[:500],
                status="PENDING",
                user_id=user_id,
                metadata_json=json.dumps(metadata or {}, default=str),
            )
            db.session.add(log)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Email log could not be written: to=%s subject='%s'", to, subject)
            return False

        ok = True
        error = None
        try:
            address = validate_email(to, check_deliverability=False).normalized
            transport = self.transport_name()
            if transport == "mailjet":
                self._send_mailjet(to_email=address, subject=subject, html=html)
            elif transport == "smtp":
                self._send_smtp(to_email=address, subject=subject, html=html)
            else:
                logger.info("Email (log-only mode): to=%s subject='%s'", address, subject)
        except EmailNotValidError as exc:
            ok, error = False, f"Invalid email: {exc}"
        except Exception as exc:
            ok, error = False, str(exc)

        try:
            if ok:
                log.status = "SENT"
                log.sent_at = datetime.now(timezone.utc)
                logger.info("Email sent: to=%s subject='%s'", to, subject)
            else:
                log.status = "FAILED"
                log.error_message = (error or "")[:1000]
                logger.error("Email failed: to=%s error=%s", to, error)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Email log status could not be updated: id=%s", log.id)
        return ok

    def _send_mailjet(self, *, to_email: str, subject: str, html: str) -> None:
        cfg = current_app.config
        payload = {
            "Messages": [
                {
                    "From": {
                        "Email": cfg.get("MAIL_FROM_EMAIL"),
                        "Name": cfg.get("MAIL_FROM_NAME"),
                    },
                    "To": [{"Email": to_email}],
                    "Subject": subject,
                    "HTMLPart": html,
                }
            ]
        }
        resp = self.session.post(
            cfg.get("MAILJET_API_URL"),
            json=payload,
            auth=(cfg["MAILJET_API_KEY"], cfg["MAILJET_API_SECRET"]),
            timeout=cfg.get("MAIL_TIMEOUT", 10),
        )
        if resp.status_code >= 400:
            raise EmailDeliveryError(f"Mailjet HTTP {resp.status_code}: {resp.text[:300]}")
        messages = (resp.json() or {}).get("Messages") or []
        if messages and messages[0].get("Status") != "success":
            raise EmailDeliveryError(f"Mailjet rejected message: {messages[0]}")

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html: str) -> None:
        cfg = current_app.config
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{cfg.get('MAIL_FROM_NAME')} <{cfg.get('MAIL_FROM_EMAIL')}>"
        msg["To"] = to_email
        msg.attach(MIMEText(html, "html"))

        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587),
                          timeout=cfg.get("MAIL_TIMEOUT", 10)) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(msg)


email_service = EmailService()


def send_email(*, to: str, subject: str, html: str,
               user_id: int | None = None, metadata: dict | None = None) -> bool:
    return email_service.send(to=to, subject=subject, html=html, user_id=user_id, metadata=metadata)


# ── Project responsibles ─────────────────────────────────────────────────────

def active_admins() -> list[User]:
    return (
        User.query
        .filter(db.func.upper(User.role) == "ADMIN", User.is_active.is_(True))
        .order_by(User.id)
        .all()
    )


def project_responsibles(project_id: int) -> list[User]:
    """Project manager (or creator) followed by every active admin, deduplicated."""
    seen: dict[int, User] = {}
    project = db.session.get(Project, project_id)
    if project is not None and project.responsible_id is not None:
        responsible = db.session.get(User, project.responsible_id)
        if responsible is not None:
            seen[responsible.id] = responsible
    for admin in active_admins():
        seen.setdefault(admin.id, admin)
    return list(seen.values())


def send_to_responsibles(project_id: int, subject: str, html: str, metadata: dict | None = None) -> int:
    """Email every responsible of ``project_id``.  Returns the number of successful sends."""
    sent = 0
    for user in project_responsibles(project_id):
        if send_email(to=user.email, subject=subject, html=html, user_id=user.id, metadata=metadata):
            sent += 1
    if sent == 0:
        logger.warning("No responsible reached for project %s: %s", project_id, subject)
    return sent
