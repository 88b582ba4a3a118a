from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from fruitables.logging import get_logger, redact_email
from fruitables.service.errors import EmailDeliveryError

logger = get_logger(__name__)


class EmailService:
    """Transactional mail for password resets and OTP logins.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Logging the message instead of sending it when SMTP is not configured

    Delivery problems raise :class:`EmailDeliveryError` so callers can tell
    a transport failure apart from a business outcome.
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
        from_name: str = "Fruitables",
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return

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
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            raise EmailDeliveryError("smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            raise EmailDeliveryError("recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp error") from e
        except (ssl.SSLError, OSError) as e:
            # Covers connection refused and timeouts
            logger.error(
                "email_transport_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp transport failed") from e

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    def render_password_reset(self, name: str, callback_url: str) -> tuple[str, str, str]:
        subject = "Reset your Fruitables password"
        safe_name = html.escape(name)
        safe_url = html.escape(callback_url, quote=True)
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #45595b;">
    <p>Hi {safe_name},</p>
    <p>Welcome to the fruitables password reset process..</p>
    <p>Please click on the link below to reset your password.</p>
    <p><a href="{safe_url}" style="color: #81c408;">Reset password</a></p>
    <p>If you did not request a password reset, you can ignore this email.</p>
</body>
</html>
"""
        text_body = (
            f"Hi {name},\n\n"
            "Welcome to the fruitables password reset process..\n"
            "Please click on the link below to reset your password.\n\n"
            f"{callback_url}\n"
        )
        return subject, html_body, text_body

    def render_otp(self, name: str, otp: int) -> tuple[str, str, str]:
        subject = "Your Fruitables login OTP"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #45595b;">
    <p>Hi {html.escape(name)},</p>
    <p>Your OTP for login is : <strong>{otp}</strong></p>
</body>
</html>
"""
        text_body = f"Hi {name},\n\nYour OTP for login is : {otp}\n"
        return subject, html_body, text_body

    async def send_password_reset_email(
        self, to_email: str, name: str, callback_url: str
    ) -> None:
        subject, html_body, text_body = self.render_password_reset(name, callback_url)
        # Blocking SMTP runs off the event loop
        await asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body)

    async def send_otp_email(self, to_email: str, name: str, otp: int) -> None:
        subject, html_body, text_body = self.render_otp(name, otp)
        await asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body)
