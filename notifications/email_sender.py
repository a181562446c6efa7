"""
SMTP email sender for alert notifications.

Handles:
  - SMTP connection with TLS
  - MIME multipart construction (HTML + plaintext fallback)
  - Severity-coloured alert template and priority headers
  - Credential management (env vars > config file)
"""
import os
import ssl
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from html import escape

logger = logging.getLogger("telemon.notifications.email_sender")

SEVERITY_COLORS = {
    "critical": "#dc3545",
    "warning": "#ffc107",
    "info": "#17a2b8",
}

# X-Priority: 1 = highest, 3 = normal, 5 = lowest
SEVERITY_PRIORITY = {
    "critical": "1",
    "warning": "3",
    "info": "5",
}


def _severity_value(severity):
    return severity.value if hasattr(severity, "value") else str(severity)


def render_alert_html(alert, dashboard_url=""):
    severity = _severity_value(alert.severity)
    color = SEVERITY_COLORS.get(severity, SEVERITY_COLORS["info"])
    link_html = (
        f'<p><a href="{escape(dashboard_url)}" style="color: {color};">Open monitoring dashboard</a></p>'
        if dashboard_url else ""
    )
    return f"""
    <div style="font-family: system-ui, sans-serif; max-width: 560px; margin: 0 auto;
                padding: 20px; background: #FFFFFF; color: #212529; border-radius: 8px;">
        <div style="background: {color}; color: #FFFFFF; padding: 12px 16px; border-radius: 6px 6px 0 0;">
            <h2 style="margin: 0;">{escape(severity.upper())} Alert</h2>
        </div>
        <div style="background: #F8F9FA; padding: 16px; border-left: 4px solid {color};">
            <h3 style="margin-top: 0;">{escape(alert.title)}</h3>
            <p>{escape(alert.description)}</p>
            <p style="color: #6C757D; font-size: 13px;">
                Triggered: {alert.triggered_at.isoformat()}<br>
                Alert ID: {escape(alert.id)}
            </p>
            {link_html}
        </div>
        <p style="color: #6C757D; font-size: 12px; margin-top: 16px;">
            Telemetry monitor &mdash; automated alert
        </p>
    </div>
    """


def render_alert_text(alert):
    severity = _severity_value(alert.severity).upper()
    return (
        f"{severity}: {alert.title}\n\n"
        f"{alert.description}\n\n"
        f"Triggered: {alert.triggered_at.isoformat()}\n"
        f"Alert ID: {alert.id}"
    )


class EmailSender:
    """
    SMTP email sender.

    Credential resolution order:
      1. Environment variables: TELEMON_SMTP_USER, TELEMON_SMTP_PASS
      2. Config file: config.email.smtp_username, config.email.smtp_password
    """

    def __init__(self, config: dict):
        email_config = config.get("email", {})
        self.smtp_host = email_config.get("smtp_host", "")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.timeout = email_config.get("timeout_seconds", 10)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "Telemetry Monitor")
        self.default_recipients = list(email_config.get("recipients") or [])
        self.dashboard_url = email_config.get("dashboard_url", "")

        self.username = os.environ.get(
            "TELEMON_SMTP_USER",
            email_config.get("smtp_username", ""),
        )
        self.password = os.environ.get(
            "TELEMON_SMTP_PASS",
            email_config.get("smtp_password", ""),
        )

    def is_configured(self) -> bool:
        """Check if all required SMTP fields are present."""
        return all([self.smtp_host, self.from_address, self.username, self.password])

    def send_alert(self, alert, recipients=None) -> bool:
        """Send the templated alert email: ``[SEVERITY] title``."""
        severity = _severity_value(alert.severity)
        subject = f"[{severity.upper()}] {alert.title}"
        return self.send(
            recipients or self.default_recipients,
            subject,
            render_alert_html(alert, self.dashboard_url),
            render_alert_text(alert),
            priority=SEVERITY_PRIORITY.get(severity, "3"),
        )

    def send_recovery(self, alert, recipients=None) -> bool:
        subject = f"RECOVERED: {alert.title}"
        text = (
            f"RECOVERED: {alert.title}\n\n"
            f"Resolved by: {alert.resolved_by or 'unknown'}\n"
            f"Alert ID: {alert.id}"
        )
        html = f"<p><strong>{escape(subject)}</strong></p><p>Alert ID: {escape(alert.id)}</p>"
        return self.send(recipients or self.default_recipients, subject, html, text)

    def send(self, recipients, subject, html_content, plaintext=None, priority="3") -> bool:
        if not self.is_configured():
            logger.warning("Email not configured - skipping send")
            return False
        if not recipients:
            logger.warning(f"No email recipients for '{subject}' - skipping send")
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["X-Priority"] = priority
        if plaintext:
            msg.attach(MIMEText(plaintext, "plain", "utf-8"))
        msg.attach(MIMEText(html_content, "html", "utf-8"))

        return self._send(msg, recipients)

    def test_connection(self) -> dict:
        """Test SMTP connectivity without sending an email."""
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.ehlo()
                if self.use_tls:
                    server.starttls(context=context)
                    server.ehlo()
                server.login(self.username, self.password)
                return {"status": "ok", "message": "SMTP connection successful",
                        "server_response": str(server.noop())}
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except smtplib.SMTPConnectError as e:
            return {"status": "error", "message": f"Connection failed: {e}"}
        except Exception as e:
            return {"status": "error", "message": str(e)}

    def _send(self, msg: MIMEMultipart, recipients) -> bool:
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.ehlo()
                if self.use_tls:
                    server.starttls(context=context)
                    server.ehlo()
                server.login(self.username, self.password)
                server.send_message(msg, to_addrs=list(recipients))
            logger.info(f"Email sent to {len(recipients)} recipient(s): {msg['Subject']}")
            return True
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed. Check username/password.")
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error(f"Recipients refused: {', '.join(recipients)}")
            return False
        except Exception as e:
            logger.error(f"Email send failed: {e}")
            return False
