"""Utility modules for MSP Alerts."""
from utils.logger import setup_logging
from utils.formatters import format_duration, time_ago
