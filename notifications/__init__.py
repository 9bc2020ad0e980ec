"""Notification senders, the channel dispatcher, and new-alert routing."""
from notifications.dispatcher import NotificationDispatcher
from notifications.email_sender import EmailSender
from notifications.sms_sender import SmsSender
from notifications.realtime_sender import RealtimeSender
from notifications.router import AlertRouter, parse_subscriptions
