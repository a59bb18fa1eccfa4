"""
Escalation External Integrations
================================

- YAML rule file watcher (watchdog) with hot reload
- APScheduler wrapper running the periodic sweeps
"""

import threading
from pathlib import Path
from typing import Awaitable, Callable, Optional

import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from approvalflow.core import ConfigurationException
from approvalflow.escalation.application.services import IEscalationConfigProvider
from approvalflow.escalation.domain import EscalationConfig
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

SweepJob = Callable[[], Awaitable[None]]


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation rule file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Escalation rules changed", extra={"path": str(event.src_path)})
            self.config_manager.reload()


class EscalationConfigManager(IEscalationConfigProvider):
    """
    Thread-safe escalation rule holder with hot reload.

    A missing file means "no per-type rules": items escalate on their own
    deadlines with the global breach threshold. A malformed file on reload
    keeps the previous rules.
    """

    def __init__(self, config: Optional[EscalationConfig] = None):
        self._config = config or EscalationConfig()
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationConfig:
        """Initial configuration load. Raises on a malformed file."""
        self._path = Path(path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> EscalationConfig:
        if not path.exists():
            logger.warning("Escalation rule file not found, using defaults", extra={"path": str(path)})
            return EscalationConfig()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return EscalationConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation rule file {path}: {e}",
                {"path": str(path)}
            ) from e

    def reload(self) -> bool:
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error("Failed to reload escalation rules", extra={"error": e.message})
            return False

        with self._lock:
            self._config = new_config
        logger.info("Escalation rules reloaded", extra={"rules": len(new_config.rules)})
        return True

    def start_watching(self) -> None:
        """Watch the rule file; skipped when it does not exist."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("Escalation rule file absent, not watching", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Watching escalation rule file", extra={"path": str(self._path)})
        except OSError as e:
            # inotify is unavailable in some containers
            logger.warning("File watching not available, using static rules", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> EscalationConfig:
        with self._lock:
            return self._config


class SweepScheduler:
    """
    APScheduler wrapper for the auto-approval and escalation sweeps.

    Each job runs with ``max_instances=1`` so a slow sweep is never
    overlapped by the next tick.
    """

    def __init__(self, auto_approval_interval: int = 600, escalation_interval: int = 600):
        self.auto_approval_interval = auto_approval_interval
        self.escalation_interval = escalation_interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, auto_approval_job: SweepJob, escalation_job: SweepJob) -> None:
        if self._running:
            logger.warning("Sweep scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            auto_approval_job,
            "interval",
            seconds=self.auto_approval_interval,
            id="auto_approval_sweep",
            name="Auto-approval Sweep",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.add_job(
            escalation_job,
            "interval",
            seconds=self.escalation_interval,
            id="escalation_sweep",
            name="Escalation Sweep",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Sweep scheduler started",
            extra={
                "auto_approval_interval": self.auto_approval_interval,
                "escalation_interval": self.escalation_interval,
            }
        )

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=True)

        self._running = False
        logger.info("Sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
