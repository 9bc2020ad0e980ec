"""Routes newly created alerts to their subscribers.

Subscriptions live in the ``directory.subscribers`` config section::

    directory:
      subscribers:
        - id: s1
          name: NOC desk
          email: noc@example.com
          severities: [high, critical]
          devices: []            # empty: every device
          metrics: [cpu_percent]
          channels: [email, realtime]
          quiet_hours: {start: "22:00", end: "07:00", timezone: America/New_York}
"""
import logging
import sqlite3
from datetime import datetime, timezone

import pytz

from models.alerts import AlertSubscription
from models.enums import NotificationChannel, Severity
from models.escalation import Recipient

logger = logging.getLogger("mspalerts.notifications.router")


def parse_subscriptions(config):
    """Build AlertSubscriptions from config; malformed entries are logged and skipped."""
    raw = (config or {}).get("directory", {}).get("subscribers", []) or []
    subscriptions = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("id"):
            logger.warning(f"Subscriber entry without id: {entry}")
            continue
        try:
            subscriptions.append(_parse_subscription(entry))
        except ValueError as e:
            logger.warning(f"Skipping subscriber {entry['id']}: {e}")
    return subscriptions


def _parse_subscription(entry):
    sub_id = str(entry["id"])
    quiet = entry.get("quiet_hours") or {}
    kwargs = {}
    if entry.get("severities"):
        kwargs["severities"] = frozenset(Severity(str(s).lower()) for s in entry["severities"])
    if entry.get("channels"):
        kwargs["channels"] = tuple(NotificationChannel(str(c).lower()) for c in entry["channels"])
    return AlertSubscription(
        recipient=Recipient(
            id=sub_id,
            name=entry.get("name", ""),
            email=entry.get("email"),
            phone=entry.get("phone"),
            realtime_id=entry.get("realtime_id") or sub_id,
            role="subscriber",
        ),
        device_ids=frozenset(str(d) for d in entry.get("devices") or []),
        metrics=frozenset(entry.get("metrics") or []),
        quiet_hours_start=_minute_of_day(quiet.get("start")),
        quiet_hours_end=_minute_of_day(quiet.get("end")),
        tz_name=quiet.get("timezone") or "UTC",
        enabled=entry.get("enabled", True),
        **kwargs,
    )


def _minute_of_day(value):
    """Parse HH:MM into minutes after midnight.

    Unquoted HH:MM in YAML loads as a base-60 integer, which already is the minute count.
    """
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        minutes = value
    else:
        try:
            hours, minutes = (int(part) for part in str(value).split(":"))
        except ValueError:
            raise ValueError(f"invalid quiet hours time {value!r}") from None
        minutes = hours * 60 + minutes
    if not 0 <= minutes < 24 * 60:
        raise ValueError(f"quiet hours time out of range: {value!r}")
    return minutes


class AlertRouter:
    """Event bus subscriber for ``alert.created``: notify every matching subscriber.

    Each delivery is logged in ``alert_notifications`` without a policy or step.
    Failures are advisory, like escalation sends.
    """

    def __init__(self, subscriptions, dispatcher, db):
        self.subscriptions = list(subscriptions)
        self.dispatcher = dispatcher
        self.db = db

    @classmethod
    def from_config(cls, config, dispatcher, db):
        return cls(parse_subscriptions(config), dispatcher, db)

    def __call__(self, event):
        self.route(event.instance, now=event.occurred_at)

    def route(self, instance, now=None):
        """Send ``instance`` to its subscribers; returns sent/failed/skipped counts."""
        now = now or datetime.now(timezone.utc)
        result = {"subscribers": 0, "sent": 0, "failed": 0, "quiet": 0}
        for sub in self.subscriptions:
            if not sub.matches(instance):
                continue
            if self.is_quiet(sub, now):
                result["quiet"] += 1
                logger.debug(f"Subscriber {sub.recipient.id} in quiet hours, alert {instance.id} not sent")
                continue
            result["subscribers"] += 1
            for channel in sub.channels:
                if self._send(sub.recipient, channel, instance, now):
                    result["sent"] += 1
                else:
                    result["failed"] += 1
        if result["subscribers"]:
            logger.info(
                f"Alert {instance.id} routed to {result['subscribers']} subscribers "
                f"({result['sent']} sent, {result['failed']} failed)"
            )
        return result

    def is_quiet(self, sub, now):
        if sub.quiet_hours_start is None or sub.quiet_hours_end is None:
            return False
        try:
            local = now.astimezone(pytz.timezone(sub.tz_name))
        except pytz.exceptions.UnknownTimeZoneError:
            logger.warning(f"Unknown timezone {sub.tz_name!r} for subscriber {sub.recipient.id}; ignoring quiet hours")
            return False
        return sub.in_quiet_window(local.hour * 60 + local.minute)

    def _send(self, recipient, channel, instance, now):
        error = None
        try:
            ok = self.dispatcher.send_new_alert([recipient], channel, instance)
        except Exception as e:
            ok, error = False, str(e)
        if not ok:
            logger.warning(f"{channel.value} notification of alert {instance.id} to {recipient.id} failed: {error or 'not delivered'}")
        try:
            self.db.log_notification(
                instance.id, None, None, channel.value, recipient,
                "sent" if ok else "failed", error_message=error, sent_at=now,
            )
        except sqlite3.Error as e:
            logger.error(f"Failed to log {channel.value} notification for alert {instance.id}: {e}")
        return ok
