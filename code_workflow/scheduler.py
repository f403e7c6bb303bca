import logging
import os
import threading

from code_workflow.service import RequestContext

logger = logging.getLogger(__name__)


class ReminderScheduler:
    def __init__(self, service):
        self.service = service
        self.interval_s = int(os.environ.get("REMINDER_INTERVAL_SECONDS", "0"))
        self.system_user = os.environ.get("SYSTEM_USER", "system.scheduler")
        self._thread = None
        self._stop = threading.Event()

    @property
    def enabled(self) -> bool:
        return self.interval_s > 0

    def start(self):
        if not self.enabled:
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="aging-reminders", daemon=True)
        self._thread.start()
        logger.info("Aging reminder scheduler started (every %ss)", self.interval_s)

    def stop(self):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)

    def run_once(self) -> int:
        ctx = RequestContext(user=self.system_user, roles={"admin"})
        return self.service.run_aging_reminders(ctx)["sent"]

    def _run(self):
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Aging reminder run failed")
