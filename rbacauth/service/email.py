from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from rbacauth.logging import get_logger
from rbacauth.service.errors import DependencyFailure

logger = get_logger(__name__)

_STYLE = (
    "body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }"
    " .container { max-width: 600px; margin: 0 auto; padding: 20px; }"
    " .code { background: #f4f4f4; padding: 20px; text-align: center; font-size: 32px;"
    " letter-spacing: 5px; }"
    " .button { display: inline-block; background: #4f46e5; color: white; padding: 12px 24px;"
    " border-radius: 6px; text-decoration: none; }"
    " .footer { color: #666; font-size: 12px; }"
)


class EmailSender(Protocol):
    def send_otp(
        self,
        to_email: str,
        code: str,
        name: str = "User",
        temporary_password: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None: ...

    def send_password_reset(self, to_email: str, reset_url: str, name: str = "User") -> None: ...


class EmailService:
    """Transactional mail for OTP codes and password resets.

    Sends through SMTP (STARTTLS or implicit TLS); when no relay is
    configured the message is logged instead, which is the dev-mode path.
    Send failures surface as ``DependencyFailure`` so callers can roll back.
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
        from_name: str = "RBAC Auth",
        otp_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.app_name,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_otp(
        self,
        to_email: str,
        code: str,
        name: str = "User",
        temporary_password: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        subject = "Verify Your Email - OTP Code"
        password_html = ""
        password_text = ""
        if temporary_password:
            password_html = (
                f"<p>An account was created for you. Your temporary password is "
                f"<strong>{temporary_password}</strong>. Please change it after signing in.</p>"
            )
            password_text = (
                f"An account was created for you. Your temporary password is "
                f"{temporary_password}. Please change it after signing in.\n\n"
            )

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>{_STYLE}</style></head>
<body>
    <div class="container">
        <h2>Email Verification</h2>
        <p>Hello {name},</p>
        {password_html}
        <p>Please use the following OTP code to verify your email address:</p>
        <div class="code">{code}</div>
        <p>This code will expire in <strong>{self.otp_ttl_minutes} minutes</strong>.</p>
        <p>If you didn't create an account, please ignore this email.</p>
        <p class="footer">This is an automated message, please do not reply.</p>
    </div>
</body>
</html>
"""
        text_body = f"""Hello {name},

{password_text}Your verification code is: {code}

This code will expire in {self.otp_ttl_minutes} minutes.

If you didn't create an account, please ignore this email.
"""
        if not self._send_email(to_email, subject, html_body, text_body):
            raise DependencyFailure(
                "Failed to send verification email. Please try again.",
                detail={"user_id": user_id} if user_id else None,
            )

    def send_password_reset(self, to_email: str, reset_url: str, name: str = "User") -> None:
        subject = "Password Reset Request"
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>{_STYLE}</style></head>
<body>
    <div class="container">
        <h2>Password Reset Request</h2>
        <p>Hello {name},</p>
        <p>You requested to reset your password. Click the button below to reset it:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>Or copy and paste this link into your browser:</p>
        <p class="footer">{reset_url}</p>
        <p><strong>This link will expire in {self.reset_ttl_minutes} minutes.</strong></p>
        <p>If you didn't request a password reset, please ignore this email.</p>
    </div>
</body>
</html>
"""
        text_body = f"""Hello {name},

You requested to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request a password reset, please ignore this email.
"""
        if not self._send_email(to_email, subject, html_body, text_body):
            raise DependencyFailure("Failed to send password reset email. Please try again.")
