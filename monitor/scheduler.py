"""Background scheduler for escalation scans and retention cleanup."""
import logging
import threading
import schedule
import time
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("mspalerts.scheduler")


class EscalationScheduler:
    def __init__(self, engine, db, interval_seconds=60, retention_days=365, cleanup_time="03:00"):
        self.engine = engine
        self.db = db
        self.interval = interval_seconds
        self.retention_days = retention_days
        self.cleanup_time = cleanup_time
        self._scheduler = schedule.Scheduler()
        self._thread = None
        self._running = False
        self._consecutive_failures = 0

    def start(self):
        """Start background scanning."""
        if self._running:
            return
        self._running = True

        self._scheduler.every(self.interval).seconds.do(self.scan_job)
        self._scheduler.every().day.at(self.cleanup_time).do(self.cleanup_job)

        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (escalation scan every {self.interval}s, cleanup at {self.cleanup_time})")

    def stop(self):
        """Stop background scanning."""
        self._running = False
        self._scheduler.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Scheduler stopped")

    def run_forever(self):
        """Run in the foreground until interrupted."""
        self.start()
        try:
            while self._running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _run_loop(self):
        # Scan immediately so alerts that became due while stopped are not delayed
        self.scan_job()
        while self._running:
            self._scheduler.run_pending()
            time.sleep(1)

    def scan_job(self):
        try:
            result = self.engine.scan()
            self._consecutive_failures = 0
            return result
        except Exception as e:
            self._consecutive_failures += 1
            logger.error(f"Escalation scan failed ({self._consecutive_failures} consecutive): {e}")
            if self._consecutive_failures >= 5:
                logger.critical("5+ consecutive escalation scan failures!")
            return None

    def cleanup_job(self, now=None):
        """Delete resolved alerts past the retention period."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.retention_days)
        try:
            deleted = self.db.delete_resolved_alerts(cutoff)
        except Exception as e:
            logger.error(f"Alert cleanup failed: {e}")
            return None
        if deleted:
            logger.info(f"Alert cleanup: {deleted} resolved alerts older than {self.retention_days}d deleted")
        else:
            logger.info("Alert cleanup: no resolved alerts to delete")
        return deleted
