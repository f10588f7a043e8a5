from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from dormauth.config import Settings
from dormauth.logging import get_logger, mask_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; background: #f1f5f9; padding: 12px 20px; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional account emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset codes
    - Security notices (password changed, MFA enabled/disabled)
    - Logging instead of sending when SMTP is not configured (dev mode)

    Every ``send_*`` method returns ``True`` on success and ``False`` on any
    delivery failure; nothing raises.
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
        from_name: str = "DormAxis",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

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
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, paragraphs: list[str]) -> tuple[str, str]:
        html_paragraphs = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            paragraphs=html_paragraphs,
            brand=html.escape(self.from_name),
        )
        plain = [html.unescape(p.replace('<span class="code">', "").replace("</span>", "")) for p in paragraphs]
        text_body = "\n\n".join([title, *plain, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_reset_code(self, to_email: str, name: str, code: str, *, ttl_minutes: int = 15) -> bool:
        """Send the 6-digit password reset code."""
        subject = f"Your {self.from_name} password reset code"
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {html.escape(name)},",
                "We received a request to reset your password. Enter this code to continue:",
                f'<span class="code">{html.escape(code)}</span>',
                f"This code will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str, name: str) -> bool:
        subject = "Your password was changed"
        html_body, text_body = self._render(
            "Password changed",
            [
                f"Hi {html.escape(name)},",
                f"The password on your {html.escape(self.from_name)} account was just changed "
                "and all other sessions were signed out.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_enabled(self, to_email: str, name: str) -> bool:
        subject = "Two-factor authentication enabled"
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                f"Hi {html.escape(name)},",
                "Two-factor authentication has been enabled on your account.",
                "You will now need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_disabled(self, to_email: str, name: str) -> bool:
        subject = "Two-factor authentication disabled"
        html_body, text_body = self._render(
            "Two-factor authentication disabled",
            [
                f"Hi {html.escape(name)},",
                "Two-factor authentication has been turned off for your account.",
                "If you didn't make this change, reset your password and contact support.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)
