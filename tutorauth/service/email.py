from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tutorauth.logging import get_logger, redact_email
from tutorauth.storage.models import OTP_TTL_MINUTES, OtpPurpose

logger = get_logger(__name__)

_OTP_SUBJECTS = {
    OtpPurpose.SIGNUP: "Confirm Your TutorCat Registration",
    OtpPurpose.LOGIN: "Your TutorCat Login Code",
    OtpPurpose.PASSWORD_RESET: "Reset Your TutorCat Password",
}

_OTP_INTROS = {
    OtpPurpose.SIGNUP: "Welcome to TutorCat! Use this code to finish creating your account.",
    OtpPurpose.LOGIN: "Use this code to sign in to TutorCat.",
    OtpPurpose.PASSWORD_RESET: "Use this code to reset your TutorCat password.",
}


class EmailService:
    """Sends verification codes over SMTP.

    When no SMTP host or sender is configured the message is logged instead
    of sent, so local development works without a mail relay.
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
        from_name: str = "TutorCat",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, purpose: OtpPurpose) -> bool:
        """Send a verification code; the purpose picks subject and wording."""
        subject = _OTP_SUBJECTS[purpose]
        intro = _OTP_INTROS[purpose]
        minutes = OTP_TTL_MINUTES[purpose]

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 24px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; color: #4f46e5; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #64748b; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>TutorCat</h2>
        <p>{intro}</p>
        <p class="code">{code}</p>
        <p><strong>This code will expire in {minutes} minutes.</strong></p>
        <p>If you did not request this code, you can ignore this email.</p>
        <div class="footer"><a href="{self.base_url}">{self.base_url}</a></div>
    </div>
</body>
</html>
"""
        text_body = (
            f"{intro}\n\n"
            f"Your code: {code}\n\n"
            f"This code will expire in {minutes} minutes.\n"
            "If you did not request this code, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
