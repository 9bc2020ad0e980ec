"""MetricIngestor - entry point for device metric batches."""
import logging
from datetime import datetime, timezone

from models.alerts import MetricSample

logger = logging.getLogger("mspalerts.monitor.ingest")


class IngestError(ValueError):
    """Raised when a metric batch cannot be normalised."""


class MetricIngestor:
    def __init__(self, db, rule_store, evaluator, instances):
        self.db = db
        self.rule_store = rule_store
        self.evaluator = evaluator
        self.instances = instances

    def normalize(self, device_id, raw_samples, received_at):
        """Turn raw dict payloads into MetricSamples.

        Each payload is either ``{"collected_at": ..., "values": {...}}`` or a flat
        metric dict with an optional ``collected_at`` key.
        """
        if isinstance(raw_samples, dict):
            raw_samples = [raw_samples]
        if not isinstance(raw_samples, (list, tuple)):
            raise IngestError(f"Batch must be a list of samples, got {type(raw_samples).__name__}")
        samples = []
        for raw in raw_samples:
            if not isinstance(raw, dict):
                raise IngestError(f"Sample must be an object, got {type(raw).__name__}")
            raw = dict(raw)
            collected = raw.pop("collected_at", None)
            values = raw.pop("values", None)
            if values is None:
                values = raw
            elif not isinstance(values, dict):
                raise IngestError(f"Sample values must be an object, got {type(values).__name__}")
            samples.append(MetricSample(
                device_id=device_id,
                collected_at=_parse_time(collected) or received_at,
                values={k: v for k, v in values.items() if isinstance(v, (int, float))},
            ))
        return samples

    def ingest(self, device_id, raw_samples, now=None):
        """Persist a batch, evaluate the device's rules, and record fired alerts."""
        if not device_id:
            raise IngestError("device_id is required")
        now = now or datetime.now(timezone.utc)
        samples = self.normalize(device_id, raw_samples, now)
        if not samples:
            return {"metrics_count": 0, "alerts_triggered": 0, "instances": []}

        self.db.save_samples(samples, now)
        self.db.touch_device(device_id, now)

        rules = self.rule_store.find_effective_rules(device_id)
        fired = self.evaluator.evaluate(samples, rules)
        created = self.instances.record(fired, now=now)
        self.instances.auto_resolve(device_id, samples, rules, now=now)

        logger.info(f"Device {device_id}: {len(samples)} samples, {len(created)} alerts triggered")
        return {
            "metrics_count": len(samples),
            "alerts_triggered": len(created),
            "instances": created,
        }


def _parse_time(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise IngestError(f"Invalid collected_at: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
