"""Realtime notification client: posts alert and escalation payloads to a broadcast gateway.

The gateway owns delivery to connected dashboards; this client only hands it
a JSON message per recipient.
"""
import logging
import requests

logger = logging.getLogger("mspalerts.notifications.realtime")


class RealtimeSender:
    def __init__(self, config: dict):
        rt_config = config.get("realtime", {})
        self.gateway_url = rt_config.get("gateway_url", "")
        self.api_key = rt_config.get("api_key", "")
        self.timeout = rt_config.get("timeout_seconds", 10)

    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    def broadcast(self, subscriber_ids: list, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = requests.post(
                self.gateway_url,
                json={"subscribers": subscriber_ids, "message": payload},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except requests.RequestException as e:
            logger.error("Realtime broadcast failed: %s", e)
            raise

    def send_escalation(self, subscriber_ids: list, instance, context: dict) -> bool:
        if not self.is_configured():
            logger.warning("Realtime gateway not configured - skipping broadcast")
            return False
        if not subscriber_ids:
            return False
        payload = {
            "type": "alert:escalated",
            "data": {
                "alert": instance.to_dict(),
                "escalation": {
                    "policy_name": context.get("policy_name"),
                    "step_number": context.get("step_number"),
                    "minutes_unacknowledged": context.get("minutes_unacknowledged"),
                },
            },
        }
        return self._post(subscriber_ids, payload)

    def send_alert(self, subscriber_ids: list, instance) -> bool:
        if not self.is_configured():
            logger.warning("Realtime gateway not configured - skipping broadcast")
            return False
        if not subscriber_ids:
            return False
        return self._post(subscriber_ids, {"type": "alert:new", "data": {"alert": instance.to_dict()}})

    def _post(self, subscriber_ids, payload):
        try:
            self.broadcast(subscriber_ids, payload)
            return True
        except requests.RequestException:
            return False
