from __future__ import annotations

import logging
import threading
from typing import Optional

from tasksync.config_manager import ConfigManager
from tasksync.exceptions import ConfigurationError
from tasksync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tasksync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Sync scheduler stopped")

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _interval_seconds(self) -> int:
        try:
            config = self.config_manager.load()
        except ConfigurationError as exc:
            logger.error("Could not read configuration, keeping default interval: %s", exc)
            return 600
        return max(30, int(config.sync.interval_seconds))

    def _loop(self) -> None:
        # Run one sync at startup so state is initialized quickly.
        self.sync_engine.run_once(trigger="startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self._interval_seconds())
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self.sync_engine.run_once(trigger="manual")
            else:
                self.sync_engine.run_once(trigger="scheduled")
