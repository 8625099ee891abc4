from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sessionward.config import Settings
from sessionward.logging import get_logger, redact_email

logger = get_logger(__name__)

_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for verification codes and password resets.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the message is logged instead, which is what local
    development relies on. Delivery problems are logged and reported as
    ``False``; they never raise into the account flow.
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
        from_name: str = "Sessionward",
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

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        recipient = redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        try:
            self._deliver(to_email, self._build_message(to_email, subject, html_body, text_body))
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_code=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                recipient=recipient,
                refused=len(exc.recipients),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # Covers connection refused, DNS failure and socket timeouts
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_otp_email(self, to_email: str, code: str, expires_minutes: int = 10) -> bool:
        """Send the six-digit verification code."""
        subject = f"Your {self.from_name} verification code"
        html_body = _LAYOUT.format(
            sender=self.from_name,
            content=(
                "<h1>Verify your email</h1>"
                "<p>Enter this code to finish creating your account:</p>"
                f'<p class="code">{code}</p>'
                f"<p>The code expires in {expires_minutes} minutes.</p>"
                "<p>If you didn't sign up, you can ignore this email.</p>"
            ),
        )
        text_body = (
            f"Your {self.from_name} verification code is {code}\n\n"
            f"The code expires in {expires_minutes} minutes.\n\n"
            "If you didn't sign up, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset_email(
        self, to_email: str, reset_url: str, expires_minutes: int = 60
    ) -> bool:
        """Send the password reset link."""
        subject = f"Reset your {self.from_name} password"
        html_body = _LAYOUT.format(
            sender=self.from_name,
            content=(
                "<h1>Reset your password</h1>"
                "<p>We received a request to reset your password.</p>"
                f'<p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>'
                f"<p>This link expires in {expires_minutes} minutes and works once.</p>"
                f"<p>If the button doesn't work, copy this URL: {reset_url}</p>"
            ),
        )
        text_body = (
            f"Reset your {self.from_name} password\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            f"This link expires in {expires_minutes} minutes and works once.\n"
            "If you didn't request this, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
