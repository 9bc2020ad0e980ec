"""Routes escalation and new-alert notifications to the sender for each channel."""
import logging

from models.enums import NotificationChannel
from notifications.email_sender import EmailSender
from notifications.realtime_sender import RealtimeSender
from notifications.sms_sender import SmsSender

logger = logging.getLogger("mspalerts.notifications.dispatcher")


class NotificationDispatcher:
    """``send(recipients, channel, instance, context) -> bool``.

    A False result is advisory: callers log it and carry on.
    """

    def __init__(self, config=None, email=None, sms=None, realtime=None):
        config = config or {}
        self.email = email or EmailSender(config)
        self.sms = sms or SmsSender(config)
        self.realtime = realtime or RealtimeSender(config)

    def send(self, recipients, channel, instance, context=None) -> bool:
        """Deliver an escalation step notification."""
        sender, targets = self._targets(recipients, NotificationChannel(channel), instance)
        if not targets:
            return False
        return sender.send_escalation(targets, instance, context or {})

    def send_new_alert(self, recipients, channel, instance) -> bool:
        """Deliver a notification that ``instance`` was just created."""
        sender, targets = self._targets(recipients, NotificationChannel(channel), instance)
        if not targets:
            return False
        return sender.send_alert(targets, instance)

    def _targets(self, recipients, channel, instance):
        if channel is NotificationChannel.EMAIL:
            sender, targets = self.email, [r.email for r in recipients if r.email]
        elif channel is NotificationChannel.SMS:
            sender, targets = self.sms, [r.phone for r in recipients if r.phone]
        else:
            sender, targets = self.realtime, [r.realtime_id for r in recipients if r.realtime_id]
        if not targets:
            logger.warning(f"No {channel.value} addresses among recipients for alert {instance.id}")
        return sender, targets
