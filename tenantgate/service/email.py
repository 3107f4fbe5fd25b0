from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from tenantgate.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {paragraphs}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""

_PURPOSE_SUBJECTS = {
    "login_mfa": "Your sign-in code",
    "signup_verify": "Verify your email",
    "password_reset": "Reset your password",
    "deletion_confirm": "Confirm account deletion",
    "mfa_enable": "Confirm two-factor authentication",
}


class EmailService:
    """Transactional mail for one-time codes and account notices.

    Without SMTP configuration every message is logged instead of sent (dev
    mode). Sending is synchronous; async callers go through
    ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "TenantGate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, lines: list[str], sender: str) -> tuple[str, str]:
        paragraphs = "\n    ".join(f"<p>{escape(line)}</p>" for line in lines)
        html_body = _HTML_TEMPLATE.format(
            title=escape(title), paragraphs=paragraphs, sender=escape(sender)
        )
        text_body = "\n\n".join([title, *lines, f"---\n{sender}"]) + "\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_one_time_code(
        self,
        to_email: str,
        code: str,
        purpose: str,
        *,
        tenant_name: str,
        ttl_minutes: int = 10,
    ) -> bool:
        subject = f"{_PURPOSE_SUBJECTS.get(purpose, 'Your verification code')} - {tenant_name}"
        html_body, text_body = self._render(
            subject,
            [
                f"Your verification code is: {code}",
                f"This code expires in {ttl_minutes} minutes.",
                "If you didn't request this code, you can safely ignore this email.",
            ],
            tenant_name,
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_login_notice(
        self,
        to_email: str,
        *,
        tenant_name: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        subject = f"New sign-in to your {tenant_name} account"
        html_body, text_body = self._render(
            subject,
            [
                "A new sign-in to your account was detected.",
                f"IP address: {ip_address or 'unknown'}",
                f"Device: {user_agent or 'unknown'}",
                "If this wasn't you, reset your password immediately.",
            ],
            tenant_name,
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_deletion_scheduled(
        self, to_email: str, *, tenant_name: str, scheduled_for: str
    ) -> bool:
        subject = f"Your {tenant_name} account is scheduled for deletion"
        html_body, text_body = self._render(
            subject,
            [
                f"Your account will be permanently deleted on {scheduled_for}.",
                "You can cancel the deletion from your account settings until then.",
            ],
            tenant_name,
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_deletion_notice_to_support(
        self,
        support_email: str,
        *,
        tenant_name: str,
        user_email: str,
        reason: Optional[str],
    ) -> bool:
        subject = f"Account deletion requested - {tenant_name}"
        html_body, text_body = self._render(
            subject,
            [
                f"User {user_email} confirmed deletion of their account.",
                f"Reason: {reason or 'not given'}",
            ],
            tenant_name,
        )
        return self._send_email(support_email, subject, html_body, text_body)
