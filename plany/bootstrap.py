"""
plany/bootstrap.py — The single wiring call for a Plany process.

``configure`` builds the task orchestrator and pipeline controller around one
Event Store instance. After the first successful call the store is fixed:
calling again with the same instance returns the existing application, and
calling with any other instance raises :class:`ConfigurationError`.

Initialisation order:

1. :func:`~plany.core.config.load_config` (unless a config is passed in)
2. :func:`~plany.core.logger.get_logger`, relocated to ``logging.log_dir``
3. :func:`~plany.store.snapshot.attach`, when ``store.path`` is set
4. :class:`~plany.orchestrator.orchestrator.TaskOrchestrator`
5. :class:`~plany.pipeline.controller.PipelineController`
6. :meth:`~plany.orchestrator.orchestrator.TaskOrchestrator.resume_pending`
   for FOOD entries still waiting on enrichment
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from plany.core.clock import Clock, SystemClock
from plany.core.config import PlanyConfig, load_config
from plany.core.errors import ConfigurationError
from plany.core.logger import get_logger, set_stderr_level
from plany.enrichment.client import EnrichmentClient
from plany.intent.classifier import Classifier
from plany.intent.extractor import Extractor
from plany.orchestrator.orchestrator import TaskOrchestrator
from plany.pipeline.controller import PipelineController
from plany.store.event_store import EventStore
from plany.store.snapshot import SnapshotFile, attach

_log = get_logger()


@dataclass(frozen=True)
class Application:
    """Everything a running process needs, all sharing one ``store``."""

    store: EventStore
    orchestrator: TaskOrchestrator
    controller: PipelineController
    config: PlanyConfig
    detach_snapshot: Optional[Callable[[], None]] = field(default=None, repr=False)

    def start(self) -> None:
        """Start the orchestrator's workers."""
        self.orchestrator.start()

    def shutdown(self) -> None:
        self.controller.shutdown()
        self.orchestrator.shutdown()
        if self.detach_snapshot is not None:
            self.detach_snapshot()


class Bootstrap:
    """
    Holds the one :class:`Application` of a process.

    Tests create their own ``Bootstrap``; production code uses the module
    level :func:`configure`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._app: Optional[Application] = None

    @property
    def application(self) -> Optional[Application]:
        return self._app

    def configure(
        self,
        store: EventStore,
        enrichment_client: EnrichmentClient,
        classifier: Classifier,
        extractor: Extractor,
        config: Optional[PlanyConfig] = None,
        clock: Optional[Clock] = None,
    ) -> Application:
        """
        Wire *store* into a new orchestrator and controller.

        Returns:
            The wired :class:`Application`; the existing one if *store* is the
            instance already wired.

        Raises:
            ConfigurationError: If a different store was wired earlier.
        """
        with self._lock:
            if self._app is not None:
                if self._app.store is store:
                    _log.info("bootstrap", "configure_noop", {"store": f"{id(store):#x}"})
                    return self._app
                _log.critical("bootstrap", "rewire_rejected", {
                    "wired_store": f"{id(self._app.store):#x}",
                    "offered_store": f"{id(store):#x}",
                })
                raise ConfigurationError(
                    "Application is already wired to another EventStore; "
                    "refusing to re-wire"
                )

            cfg = config or load_config()
            _log.relocate(cfg.logging.log_dir)
            set_stderr_level(cfg.logging.level)
            clock = clock or SystemClock()

            detach_snapshot = None
            if cfg.store.path is not None:
                detach_snapshot = attach(store, SnapshotFile(cfg.store.path))

            orchestrator = TaskOrchestrator(store, enrichment_client, cfg.orchestrator, clock)
            controller = PipelineController(
                store, orchestrator, classifier, extractor, cfg.pipeline, clock,
            )
            self._app = Application(
                store=store, orchestrator=orchestrator, controller=controller, config=cfg,
                detach_snapshot=detach_snapshot,
            )
            resumed = orchestrator.resume_pending()
            _log.info("bootstrap", "wired", {
                "store": f"{id(store):#x}",
                "snapshot": cfg.store.path,
                "resumed_jobs": resumed,
            })
            return self._app


_default = Bootstrap()


def configure(
    store: EventStore,
    enrichment_client: EnrichmentClient,
    classifier: Classifier,
    extractor: Extractor,
    config: Optional[PlanyConfig] = None,
    clock: Optional[Clock] = None,
) -> Application:
    """Wire the process-wide application. See :meth:`Bootstrap.configure`."""
    return _default.configure(store, enrichment_client, classifier, extractor, config, clock)
