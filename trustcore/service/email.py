from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from trustcore.logging import get_logger, redact_email

logger = get_logger(__name__)

# template name -> (subject, html body, text body)
Rendered = Tuple[str, str, str]

_BASE_STYLE = (
    "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;"
    " line-height: 1.6; color: #1f2933;"
)


def _wrap_html(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body style="{_BASE_STYLE}">
<div style="max-width: 600px; margin: 0 auto; padding: 20px;">
{body}
<p style="font-size: 12px; color: #52606d;">This is an automated security notice.</p>
</div>
</body>
</html>
"""


def _render_invitation(data: Dict[str, Any]) -> Rendered:
    org = data.get("organization_name") or "your team"
    inviter = data.get("inviter_name") or "A teammate"
    role = data.get("role", "member")
    url = data["invite_url"]
    days = data.get("expires_in_days", 7)
    subject = f"You've been invited to join {org}"
    body = f"""
<h2>Join {html.escape(org)}</h2>
<p>{html.escape(inviter)} has invited you to join <strong>{html.escape(org)}</strong>
as a {html.escape(role)}.</p>
<p><a href="{html.escape(url, quote=True)}"
      style="display: inline-block; padding: 12px 24px; background: #10b981; color: #ffffff;
             text-decoration: none; border-radius: 6px;">Accept invitation</a></p>
<p>This invitation expires in {days} days. If you weren't expecting it, you can ignore this email.</p>
"""
    text = (
        f"{inviter} has invited you to join {org} as a {role}.\n\n"
        f"Accept the invitation: {url}\n\n"
        f"This invitation expires in {days} days."
    )
    return subject, _wrap_html(subject, body), text


def _render_two_factor_enabled(data: Dict[str, Any]) -> Rendered:
    name = data.get("name") or "there"
    subject = "Two-factor authentication enabled"
    body = f"""
<h2>Two-factor authentication is on</h2>
<p>Hi {html.escape(name)},</p>
<p>Two-factor authentication was enabled on your account. Keep your backup codes somewhere safe;
each one works only once.</p>
<p>If you didn't make this change, reset your password and contact your administrator immediately.</p>
"""
    text = (
        f"Hi {name},\n\nTwo-factor authentication was enabled on your account. "
        "Keep your backup codes somewhere safe; each one works only once.\n\n"
        "If you didn't make this change, reset your password and contact your administrator."
    )
    return subject, _wrap_html(subject, body), text


def _render_two_factor_disabled(data: Dict[str, Any]) -> Rendered:
    name = data.get("name") or "there"
    subject = "Two-factor authentication disabled"
    body = f"""
<h2>Two-factor authentication is off</h2>
<p>Hi {html.escape(name)},</p>
<p>Two-factor authentication was disabled on your account and your backup codes were revoked.</p>
<p>If you didn't make this change, reset your password and contact your administrator immediately.</p>
"""
    text = (
        f"Hi {name},\n\nTwo-factor authentication was disabled on your account "
        "and your backup codes were revoked.\n\n"
        "If you didn't make this change, reset your password and contact your administrator."
    )
    return subject, _wrap_html(subject, body), text


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Rendered]] = {
    "invitation": _render_invitation,
    "two_factor_enabled": _render_two_factor_enabled,
    "two_factor_disabled": _render_two_factor_disabled,
}


class EmailService:
    """Transactional email over SMTP.

    Delivery is fire-and-forget from the caller's point of view: :meth:`send`
    logs failures and returns ``False`` instead of raising. When SMTP is not
    configured (dev mode) messages are logged and treated as sent.
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
        from_name: str = "trustcore",
        timeout: float = 10.0,
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

    def send(self, template: str, recipient: str, data: Dict[str, Any]) -> bool:
        renderer = TEMPLATES.get(template)
        if renderer is None:
            raise ValueError(f"unknown email template: {template}")
        subject, html_body, text_body = renderer(data)
        return self._send_email(recipient, subject, html_body, text_body, template=template)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        template: str = "",
    ) -> bool:
        if not self.is_configured:
            # Body is not logged: invitation bodies carry the accept link.
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                template=template,
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
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
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

            logger.info("email_sent", to=redact_email(to_email), template=template)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error", to=redact_email(to_email), host=self.smtp_host, error=str(e)
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
