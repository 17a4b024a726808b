"""
Checkpoint Scheduler

Calls RootAnchorService.checkpoint() on a fixed interval, in a daemon
thread, out-of-band from every write.

CONFIGURATION:
- AUDITLEDGER_ANCHOR_ENABLED: Enable periodic checkpoints (default: false)
- AUDITLEDGER_ANCHOR_INTERVAL_SECONDS: Seconds between checkpoints (default: 3600)

USAGE:
    scheduler = AnchorScheduler(anchor_service)
    scheduler.start()

    # Or run one checkpoint now
    root = scheduler.run_once()

    scheduler.stop()
"""

import os
import threading
from dataclasses import dataclass
from typing import Optional

from ..observability import get_logger
from ..schemas import LedgerRoot
from .anchor import RootAnchorService

logger = get_logger(__name__)


@dataclass
class AnchorConfig:
    """Configuration for the checkpoint scheduler."""
    interval_seconds: int = 3600
    enabled: bool = False

    @classmethod
    def from_env(cls) -> "AnchorConfig":
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=int(os.environ.get("AUDITLEDGER_ANCHOR_INTERVAL_SECONDS", "3600")),
            enabled=os.environ.get("AUDITLEDGER_ANCHOR_ENABLED", "").lower() in ("1", "true", "yes"),
        )


class AnchorScheduler:
    """Background thread that checkpoints committed history periodically."""

    def __init__(
        self,
        anchor_service: RootAnchorService,
        config: Optional[AnchorConfig] = None,
    ):
        self._anchor_service = anchor_service
        self._config = config or AnchorConfig.from_env()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_root: Optional[LedgerRoot] = None
        self._last_error: Optional[str] = None

    @property
    def anchor_service(self) -> RootAnchorService:
        return self._anchor_service

    @property
    def config(self) -> AnchorConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background scheduler."""
        if not self._config.enabled:
            logger.info("Checkpoint scheduler disabled (set AUDITLEDGER_ANCHOR_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Checkpoint scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="auditledger-anchor", daemon=True)
        self._thread.start()

        logger.info("Checkpoint scheduler started", interval_seconds=self._config.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background scheduler."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Checkpoint scheduler stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                self._last_error = str(e)
                logger.exception("Checkpoint failed", error=str(e))

            self._stop_event.wait(timeout=self._config.interval_seconds)

    def run_once(self) -> Optional[LedgerRoot]:
        """Run one checkpoint now. Returns the new root, or None if nothing was anchored."""
        root = self._anchor_service.checkpoint()
        if root is not None:
            self._last_root = root
            self._last_error = None
        return root

    def get_anchor_status(self) -> dict:
        """Current scheduler state, for health and admin endpoints."""
        latest = self._anchor_service.get_roots()
        last = latest[-1] if latest else None
        return {
            "enabled": self._config.enabled,
            "running": self._running,
            "interval_seconds": self._config.interval_seconds,
            "root_count": len(latest),
            "last_anchored_seq": last.last_seq if last else 0,
            "last_root_hash": last.root_hash if last else None,
            "last_error": self._last_error,
        }
