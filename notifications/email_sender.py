"""
SMTP email sender for new-alert and escalation notifications.

Handles:
  - SMTP connection with TLS
  - MIME multipart construction (HTML + plaintext fallback)
  - Credential management (env vars > config file)
"""
import os
import ssl
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

from utils.formatters import format_timestamp

logger = logging.getLogger("mspalerts.notifications.email_sender")

_SEVERITY_COLORS = {
    "critical": "#FF1744",
    "high": "#FF6D00",
    "medium": "#FFC107",
    "low": "#2196F3",
}


class EmailSender:
    """
    SMTP email sender.

    Credential resolution order:
      1. Environment variables: MSP_ALERTS_SMTP_USER, MSP_ALERTS_SMTP_PASS
      2. Config file: config.email.smtp_username, config.email.smtp_password
    """

    def __init__(self, config: dict):
        email_config = config.get("email", {})
        self.smtp_host = email_config.get("smtp_host", "")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "MSP Alerts")
        self.dashboard_url = email_config.get("dashboard_url", "")

        self.username = os.environ.get(
            "MSP_ALERTS_SMTP_USER",
            email_config.get("smtp_username", ""),
        )
        self.password = os.environ.get(
            "MSP_ALERTS_SMTP_PASS",
            email_config.get("smtp_password", ""),
        )

    def is_configured(self) -> bool:
        """Check if all required SMTP fields are present."""
        return all([self.smtp_host, self.from_address, self.username, self.password])

    def send_escalation(self, to_addresses: list, instance, context: dict) -> bool:
        """Send one escalation email to every address in ``to_addresses``."""
        if not self.is_configured():
            logger.warning("Email not configured - skipping escalation email")
            return False
        if not to_addresses:
            return False

        severity = instance.severity.value
        detail = (
            f"Unacknowledged for {context.get('minutes_unacknowledged', 0)} minutes "
            f"({context.get('policy_name', '')}, step {context.get('step_number', '')})"
        )
        msg = self._build_message(
            to_addresses, f"[ESCALATED] Alert: {instance.message[:80]} - {severity.upper()}",
            "Escalated alert", instance, detail,
        )
        return self._send(msg)

    def send_alert(self, to_addresses: list, instance) -> bool:
        """Tell every address in ``to_addresses`` that ``instance`` was raised."""
        if not self.is_configured():
            logger.warning("Email not configured - skipping alert email")
            return False
        if not to_addresses:
            return False

        severity = instance.severity.value
        detail = f"Triggered {format_timestamp(instance.triggered_at)}"
        msg = self._build_message(
            to_addresses, f"[{severity.upper()}] Alert: {instance.message[:80]}",
            "New alert", instance, detail,
        )
        return self._send(msg)

    def _build_message(self, to_addresses, subject, heading, instance, detail):
        severity = instance.severity.value
        color = _SEVERITY_COLORS.get(severity, "#FFC107")
        link = f'<p><a href="{self.dashboard_url}">Open dashboard</a></p>' if self.dashboard_url else ""

        html = f"""
        <div style="font-family: system-ui, sans-serif; max-width: 520px; margin: 0 auto;
                    padding: 20px; background: #FFFFFF; color: #1E272E; border-radius: 12px;">
            <h2 style="margin-top: 0;">{heading}</h2>
            <div style="background: #F0F1F6; padding: 16px; border-radius: 8px;
                        border-left: 4px solid {color};">
                <h3 style="margin-top: 0; color: {color};">{severity.upper()} on {instance.device_id}</h3>
                <p>{instance.message}</p>
                <p style="color: #636E72;">{detail}</p>
            </div>
            {link}
        </div>
        """
        text = f"{subject}\n{severity.upper()} alert on {instance.device_id}\n{instance.message}\n{detail}"

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = ", ".join(to_addresses)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def test_connection(self) -> dict:
        """Test SMTP connectivity without sending an email."""
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.ehlo()
                if self.use_tls:
                    server.starttls(context=context)
                    server.ehlo()
                server.login(self.username, self.password)
                return {"status": "ok", "message": "SMTP connection successful"}
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except smtplib.SMTPConnectError as e:
            return {"status": "error", "message": f"Connection failed: {e}"}
        except Exception as e:
            return {"status": "error", "message": str(e)}

    def _send(self, msg: MIMEMultipart) -> bool:
        """Internal: send a constructed MIME message via SMTP."""
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.ehlo()
                if self.use_tls:
                    server.starttls(context=context)
                    server.ehlo()
                server.login(self.username, self.password)
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
            return True
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed. Check username/password.")
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error(f"Recipients refused: {msg['To']}")
            return False
        except Exception as e:
            logger.error(f"Email send failed: {e}")
            return False
