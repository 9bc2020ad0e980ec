"""Twilio SMS client for new-alert and escalation notifications.

Uses raw HTTP POST via requests against the Twilio REST API.
"""
import os
import logging
import requests

logger = logging.getLogger("mspalerts.notifications.sms")

TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SmsSender:
    """Thin wrapper around the Twilio Messages endpoint."""

    def __init__(self, config: dict):
        sms_config = config.get("sms", {})
        self.account_sid = os.environ.get("MSP_ALERTS_TWILIO_SID", sms_config.get("account_sid", ""))
        self.auth_token = os.environ.get("MSP_ALERTS_TWILIO_TOKEN", sms_config.get("auth_token", ""))
        self.from_number = sms_config.get("from_number", "")
        self.url = TWILIO_API.format(sid=self.account_sid)

    def is_configured(self) -> bool:
        return all([self.account_sid, self.auth_token, self.from_number])

    def send_message(self, to_number: str, body: str) -> dict:
        """Send one SMS. Returns the Twilio API response dict."""
        try:
            resp = requests.post(
                self.url,
                data={"From": self.from_number, "To": to_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=30,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error("SMS send to %s failed: %s", to_number, e)
            raise

    def send_escalation(self, phone_numbers: list, instance, context: dict) -> bool:
        """Text every number; True only if all messages were accepted."""
        if not self.is_configured():
            logger.warning("SMS not configured - skipping escalation SMS")
            return False
        if not phone_numbers:
            return False

        body = (
            f"[ESCALATED] {instance.severity.value.upper()} alert on {instance.device_id}: "
            f"{instance.message[:100]}. Unacknowledged for "
            f"{context.get('minutes_unacknowledged', 0)} minutes."
        )
        return self._send_all(phone_numbers, body)

    def send_alert(self, phone_numbers: list, instance) -> bool:
        """Text every number about a newly raised alert."""
        if not self.is_configured():
            logger.warning("SMS not configured - skipping alert SMS")
            return False
        if not phone_numbers:
            return False
        body = f"[{instance.severity.value.upper()}] alert on {instance.device_id}: {instance.message[:100]}"
        return self._send_all(phone_numbers, body)

    def _send_all(self, phone_numbers, body):
        """True only if every message was accepted."""
        delivered = 0
        for number in phone_numbers:
            try:
                self.send_message(number, body)
                delivered += 1
            except requests.RequestException:
                continue
        return delivered == len(phone_numbers)
