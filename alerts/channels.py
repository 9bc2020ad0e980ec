"""Event bus subscribers that surface alert events to operators."""
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from rich.markup import escape

logger = logging.getLogger("mspalerts.alerts.channels")


@runtime_checkable
class AlertChannel(Protocol):
    def __call__(self, event) -> None: ...


class ConsoleChannel:
    """Print alert events to terminal with rich formatting."""

    severity_styles = {
        "critical": "bold white on red",
        "high": "bold red",
        "medium": "bold yellow",
        "low": "bold blue",
    }

    def __init__(self, console=None):
        from rich.console import Console
        self.console = console or Console()

    def __call__(self, event):
        instance = event.instance
        sev = instance.severity.value
        style = self.severity_styles.get(sev, "")
        self.console.print(
            f"[{style}]{event.type.value}[/] alert {instance.id} \\[{sev}] {instance.device_id}: {escape(instance.message)}"
        )


class FileChannel:
    """Append alert events to a JSON lines audit log."""

    def __init__(self, log_path="data/alert_events.jsonl"):
        self.log_path = log_path

    def __call__(self, event):
        entry = {
            "timestamp": event.occurred_at.isoformat(),
            "event": event.type.value,
            "alert": event.instance.to_dict(),
        }
        entry.update(event.data)
        try:
            Path(self.log_path).parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write alert event to file: {e}")
