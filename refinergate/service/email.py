from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from refinergate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    subject: str
    text_body: str
    html_body: Optional[str] = None


class MessageChannel(Protocol):
    """Out-of-band delivery for links and codes. Returns False on failure."""

    def send(self, destination: str, content: OutboundMessage) -> bool: ...


def render_password_reset(reset_url: str, *, ttl_minutes: int, product: str = "Refiner") -> OutboundMessage:
    hours = ttl_minutes // 60
    lifetime = f"{hours} hour{'s' if hours != 1 else ''}" if ttl_minutes % 60 == 0 else f"{ttl_minutes} minutes"
    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>Someone asked to reset the password for this {product} account. Use the button below to pick a new one:</p>
        <p style="margin: 30px 0;">
            <a href="{reset_url}" class="button">Reset Password</a>
        </p>
        <p>The link works once and expires in {lifetime}.</p>
        <p>If you did not ask for this, ignore this email; your password stays the same.</p>
        <div class="footer">
            <p>{product}</p>
            <p>Button not working? Paste this URL into your browser: {reset_url}</p>
        </div>
    </div>
</body>
</html>
"""
    text_body = f"""Reset your {product} password

Someone asked to reset the password for this {product} account. Open the link below to pick a new one:

{reset_url}

The link works once and expires in {lifetime}.

If you did not ask for this, ignore this email; your password stays the same.

---
{product}
"""
    return OutboundMessage(
        subject=f"Reset your {product} password",
        text_body=text_body,
        html_body=html_body,
    )


class EmailService:
    """SMTP delivery for transactional mail.

    Falls back to logging the recipient and subject when SMTP is not configured.
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
        from_name: str = "Refiner",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, destination: str, content: OutboundMessage) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(destination),
                subject=content.subject,
                body_length=len(content.text_body),
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = content.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = destination
        msg.attach(MIMEText(content.text_body, "plain"))
        if content.html_body:
            msg.attach(MIMEText(content.html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, destination, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, destination, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(destination),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(destination),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(destination),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(destination), subject=content.subject)
        return True
