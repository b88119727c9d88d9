from __future__ import annotations

import html
import re
import smtplib
import ssl
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Dict, Optional, Tuple

import httpx

from warden.config import EmailProvider, Settings
from warden.logging import get_logger, mask_email
from warden.service.deadline import outbound_timeout
from warden.service.errors import UpstreamError
from warden.storage.models import EmailServiceConfig, EmailTemplate

logger = get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
SENDGRID_SCOPES_URL = "https://api.sendgrid.com/v3/scopes"
SEND_TIMEOUT_SECONDS = 30.0

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
<div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
{body}
<p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{{{{app_name}}}}</p>
</div>
</body>
</html>
"""

DEFAULT_TEMPLATES: Dict[str, Tuple[str, str, str]] = {
    "mfa_code": (
        "Your {{app_name}} verification code",
        _LAYOUT.format(
            body=(
                "<h1>Verification code</h1>"
                "<p>Use this code to finish signing in:</p>"
                '<p style="font-size: 28px; letter-spacing: 4px; font-weight: 600;">{{code}}</p>'
                "<p>The code expires in {{expiry_minutes}} minutes. If you did not try to "
                "sign in, change your password.</p>"
            )
        ),
        "Your {{app_name}} verification code is {{code}}.\n\n"
        "It expires in {{expiry_minutes}} minutes. If you did not try to sign in, "
        "change your password.\n",
    ),
    "email_verification": (
        "Verify your {{app_name}} email",
        _LAYOUT.format(
            body=(
                "<h1>Verify your email</h1>"
                "<p>Hi {{username}}, please confirm your address:</p>"
                '<p><a href="{{verify_url}}">Verify Email</a></p>'
                "<p>This link expires in 24 hours.</p>"
            )
        ),
        "Hi {{username}},\n\nVerify your {{app_name}} email by visiting:\n\n"
        "{{verify_url}}\n\nThis link expires in 24 hours.\n",
    ),
    "password_reset": (
        "Reset your {{app_name}} password",
        _LAYOUT.format(
            body=(
                "<h1>Reset your password</h1>"
                "<p>We received a request to reset your password.</p>"
                '<p><a href="{{reset_url}}">Reset Password</a></p>'
                "<p>This link expires in 1 hour. If you didn't request this, ignore this email.</p>"
            )
        ),
        "Reset your {{app_name}} password by visiting:\n\n{{reset_url}}\n\n"
        "This link expires in 1 hour. If you didn't request this, ignore this email.\n",
    ),
    "new_device_login": (
        "New sign-in to your {{app_name}} account",
        _LAYOUT.format(
            body=(
                "<h1>New device sign-in</h1>"
                "<p>Hi {{username}}, your account was just used from a new device.</p>"
                "<p>Device: {{device}}<br>Location: {{location}}<br>"
                "IP address: {{ip_address}}<br>Time: {{time}}</p>"
                "<p>If this wasn't you, change your password and sign out other sessions.</p>"
            )
        ),
        "Hi {{username}},\n\nYour account was just used from a new device.\n\n"
        "Device: {{device}}\nLocation: {{location}}\nIP address: {{ip_address}}\n"
        "Time: {{time}}\n\nIf this wasn't you, change your password and sign out "
        "other sessions.\n",
    ),
    "security_notice": (
        "{{app_name}} security notice: {{title}}",
        _LAYOUT.format(body="<h1>{{title}}</h1><p>{{message}}</p>"),
        "{{title}}\n\n{{message}}\n",
    ),
}


def render_placeholders(source: str, variables: Dict[str, object], *, escape: bool) -> str:
    """Replace ``{{name}}`` markers; unknown names render empty."""

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        text = str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER.sub(_sub, source)


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    template_type: str
    subject: str
    html_body: str
    text_body: str
    variables: Dict[str, object] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class _Sink:
    kind: str
    config: dict
    credentials: dict
    from_address: Optional[str]
    from_name: str


class EmailDispatcher:
    """Renders templates and hands messages to the configured send sink.

    The admin-selected email service wins; otherwise the environment provider
    is used. The ``log`` sink records messages in ``outbox`` instead of
    delivering them.
    """

    def __init__(self, store, settings: Settings, *, outbox_size: int = 100) -> None:
        self.store = store
        self.settings = settings
        self.outbox: Deque[OutboundEmail] = deque(maxlen=outbox_size)

    # ------------------------------------------------------------------
    # rendering
    # ------------------------------------------------------------------
    def template_for(self, template_type: str) -> EmailTemplate:
        stored = self.store.get_email_template(template_type)
        if stored is not None:
            return stored
        subject, html_body, text_body = DEFAULT_TEMPLATES[template_type]
        return EmailTemplate(
            template_type=template_type,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
        )

    def render(self, template_type: str, variables: Dict[str, object]) -> Tuple[str, str, str]:
        template = self.template_for(template_type)
        merged = {"app_name": self.settings.email_from_name, **variables}
        return (
            render_placeholders(template.subject, merged, escape=False),
            render_placeholders(template.html_body, merged, escape=True),
            render_placeholders(template.text_body, merged, escape=False),
        )

    # ------------------------------------------------------------------
    # sinks
    # ------------------------------------------------------------------
    def _sink_from_service(self, service: EmailServiceConfig) -> _Sink:
        return _Sink(
            kind=service.service_type,
            config=dict(service.config or {}),
            credentials=dict(service.credentials or {}),
            from_address=service.from_address or self.settings.email_from_address,
            from_name=service.from_name or self.settings.email_from_name,
        )

    def _resolve_sink(self) -> _Sink:
        service = self.store.get_active_email_service()
        if service is not None and service.is_enabled:
            return self._sink_from_service(service)
        provider = EmailProvider(self.settings.default_email_provider)
        if provider is EmailProvider.SMTP:
            return _Sink(
                kind="smtp",
                config={
                    "host": self.settings.smtp_host,
                    "port": self.settings.smtp_port,
                    "use_tls": self.settings.smtp_use_tls,
                },
                credentials={
                    "user": self.settings.smtp_user,
                    "password": self.settings.smtp_password,
                },
                from_address=self.settings.email_from_address or self.settings.smtp_user,
                from_name=self.settings.email_from_name,
            )
        if provider is EmailProvider.SENDGRID:
            return _Sink(
                kind="sendgrid",
                config={},
                credentials={"api_key": self.settings.sendgrid_api_key},
                from_address=self.settings.email_from_address,
                from_name=self.settings.email_from_name,
            )
        return _Sink(
            kind="log",
            config={},
            credentials={},
            from_address=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )

    def _send_smtp(self, sink: _Sink, message: OutboundEmail) -> None:
        host = sink.config.get("host")
        if not host or not sink.from_address:
            raise UpstreamError("SMTP sink is not configured")
        port = int(sink.config.get("port") or 587)
        user = sink.credentials.get("user")
        password = sink.credentials.get("password")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{sink.from_name} <{sink.from_address}>"
        msg["To"] = message.to
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        timeout = outbound_timeout(SEND_TIMEOUT_SECONDS)
        logger.debug(
            "email_connecting",
            host=host,
            port=port,
            use_tls=sink.config.get("use_tls", True),
            to=mask_email(message.to),
        )
        if sink.config.get("use_tls", True):
            with smtplib.SMTP(host, port, timeout=timeout) as server:
                server.starttls(context=context)
                if user and password:
                    server.login(user, password)
                server.sendmail(sink.from_address, message.to, msg.as_string())
        else:
            with smtplib.SMTP_SSL(host, port, context=context, timeout=timeout) as server:
                if user and password:
                    server.login(user, password)
                server.sendmail(sink.from_address, message.to, msg.as_string())

    def _send_sendgrid(self, sink: _Sink, message: OutboundEmail) -> None:
        api_key = sink.credentials.get("api_key")
        if not api_key or not sink.from_address:
            raise UpstreamError("SendGrid sink is not configured")
        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": sink.from_address, "name": sink.from_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text_body},
                {"type": "text/html", "value": message.html_body},
            ],
        }
        response = httpx.post(
            SENDGRID_SEND_URL,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=outbound_timeout(SEND_TIMEOUT_SECONDS),
        )
        response.raise_for_status()

    def _deliver(self, sink: _Sink, message: OutboundEmail) -> Optional[str]:
        """Hand one message to ``sink``; returns an error description or None."""
        if sink.kind == "log":
            self.outbox.append(message)
            logger.info(
                "email_dev_mode",
                to=mask_email(message.to),
                template_type=message.template_type,
                subject=message.subject,
            )
            return None
        try:
            if sink.kind == "smtp":
                self._send_smtp(sink, message)
            elif sink.kind == "sendgrid":
                self._send_sendgrid(sink, message)
            else:
                return f"unsupported email sink {sink.kind}"
        except UpstreamError as exc:
            logger.error("email_sink_unconfigured", sink=sink.kind, error=exc.message)
            return exc.message
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=mask_email(message.to),
                host=sink.config.get("host"),
                error_code=getattr(exc, "smtp_code", None),
            )
            return "SMTP authentication failed"
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=mask_email(message.to),
                refused=len(getattr(exc, "recipients", {}) or {}),
            )
            return "recipient refused"
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=mask_email(message.to),
                host=sink.config.get("host"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return f"SMTP error: {type(exc).__name__}"
        except ssl.SSLError as exc:
            logger.error("email_ssl_error", host=sink.config.get("host"), error=str(exc))
            return "TLS negotiation failed"
        except httpx.HTTPStatusError as exc:
            logger.error(
                "email_sendgrid_rejected",
                to=mask_email(message.to),
                status_code=exc.response.status_code,
            )
            return f"SendGrid returned status {exc.response.status_code}"
        except (httpx.HTTPError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_email(message.to),
                sink=sink.kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return f"delivery failed: {type(exc).__name__}"
        logger.info(
            "email_sent",
            to=mask_email(message.to),
            template_type=message.template_type,
            sink=sink.kind,
        )
        return None

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def send(
        self,
        to: str,
        template_type: str,
        variables: Dict[str, object],
        *,
        critical: bool = False,
    ) -> bool:
        """Render and deliver one message.

        A failed ``critical`` message raises ``UpstreamError``; other failures
        are logged and reported as False.
        """
        subject, html_body, text_body = self.render(template_type, variables)
        message = OutboundEmail(
            to=to,
            template_type=template_type,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            variables=dict(variables),
        )
        error = self._deliver(self._resolve_sink(), message)
        if error is None:
            return True
        if critical:
            raise UpstreamError("email delivery failed", detail={"template_type": template_type})
        logger.warning("email_notification_dropped", template_type=template_type, reason=error)
        return False

    def send_mfa_code(self, to: str, code: str, *, expiry_minutes: int) -> bool:
        return self.send(
            to,
            "mfa_code",
            {"code": code, "expiry_minutes": expiry_minutes, "user_email": to},
            critical=True,
        )

    def send_email_verification(self, to: str, token: str, *, username: str) -> bool:
        verify_url = f"{self.settings.app_base_url}/auth/verify-email/{token}"
        return self.send(
            to, "email_verification", {"verify_url": verify_url, "username": username}
        )

    def send_password_reset(self, to: str, token: str) -> bool:
        reset_url = f"{self.settings.app_base_url}/reset-password/{token}"
        return self.send(to, "password_reset", {"reset_url": reset_url})

    def send_new_device_login(
        self,
        to: str,
        *,
        username: str,
        device: str,
        location: Optional[str],
        ip_address: Optional[str],
    ) -> bool:
        return self.send(
            to,
            "new_device_login",
            {
                "username": username,
                "device": device,
                "location": location or "Unknown",
                "ip_address": ip_address or "Unknown",
                "time": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            },
        )

    def send_security_notice(self, to: str, title: str, message: str) -> bool:
        return self.send(to, "security_notice", {"title": title, "message": message})

    # ------------------------------------------------------------------
    # admin health checks
    # ------------------------------------------------------------------
    def test_connection(self, service: EmailServiceConfig) -> Tuple[bool, str]:
        sink = self._sink_from_service(service)
        if sink.kind == "smtp":
            host = sink.config.get("host")
            if not host:
                return False, "SMTP host is not configured"
            port = int(sink.config.get("port") or 587)
            user = sink.credentials.get("user")
            password = sink.credentials.get("password")
            context = ssl.create_default_context()
            timeout = outbound_timeout(SEND_TIMEOUT_SECONDS)
            try:
                if sink.config.get("use_tls", True):
                    with smtplib.SMTP(host, port, timeout=timeout) as server:
                        server.starttls(context=context)
                        if user and password:
                            server.login(user, password)
                else:
                    with smtplib.SMTP_SSL(host, port, context=context, timeout=timeout) as server:
                        if user and password:
                            server.login(user, password)
            except smtplib.SMTPAuthenticationError:
                return False, "SMTP authentication failed"
            except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
                logger.warning("email_test_connection_failed", host=host, error=str(exc))
                return False, f"SMTP connection failed: {type(exc).__name__}"
            return True, "SMTP connection successful"
        if sink.kind == "sendgrid":
            api_key = sink.credentials.get("api_key") or ""
            if not api_key.startswith("SG."):
                return False, 'Invalid SendGrid API key format. API keys start with "SG."'
            try:
                response = httpx.get(
                    SENDGRID_SCOPES_URL,
                    headers={"Authorization": f"Bearer {api_key}"},
                    timeout=outbound_timeout(SEND_TIMEOUT_SECONDS),
                )
            except httpx.HTTPError as exc:
                logger.warning("email_test_connection_failed", sink="sendgrid", error=str(exc))
                return False, f"SendGrid connection failed: {type(exc).__name__}"
            if response.status_code == 200:
                return True, "SendGrid connection successful"
            if response.status_code in (401, 403):
                return False, "SendGrid rejected the API key"
            return False, f"SendGrid returned status {response.status_code}"
        return False, f"unsupported service type {sink.kind}"

    def test_send(self, service: EmailServiceConfig, to: str) -> Tuple[bool, str]:
        subject, html_body, text_body = self.render(
            "security_notice",
            {
                "title": "Test email",
                "message": f"This is a test message from the {service.name} email service.",
            },
        )
        message = OutboundEmail(
            to=to,
            template_type="security_notice",
            subject=subject,
            html_body=html_body,
            text_body=text_body,
        )
        error = self._deliver(self._sink_from_service(service), message)
        if error:
            return False, error
        return True, f"Test email sent to {mask_email(to)}"
