"""Per-module scheduling of collection runs.

Every enabled module gets its own worker thread, so a slow command only ever
delays its own module. Within a module ticks are strictly sequential: a
worker runs one tick at a time, and a re-armed module's new worker waits for
the previous one to finish before its first tick.

Per tick a module moves ``IDLE -> DUE -> RUNNING -> IDLE``. In ``DUE`` the
failure policy may veto the attempt, in which case the tick is skipped and
the module goes straight back to ``IDLE``.
"""

from __future__ import annotations

from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
import logging
import threading
import time

from board_tap.config import AppConfig, ModuleOverride
from board_tap.failure_policy import FailurePolicy
from board_tap.pipeline import CollectionPipeline, CollectionResult, Status, utc_now
from board_tap.publisher import ConnectivityMonitor, ResultPublisher
from board_tap.registry import Module, ModuleRegistry

logger = logging.getLogger(__name__)

# How often a re-armed worker checks its own stop flag while waiting for its
# predecessor to finish.
_HANDOVER_POLL_S = 0.1


class ModuleState(str, Enum):
    IDLE = "idle"
    DUE = "due"
    RUNNING = "running"


@dataclass(frozen=True)
class ModuleSettings:
    enabled: bool
    interval_s: float


def _apply_override(
    enabled: bool, interval_s: float, override: ModuleOverride | None
) -> tuple[bool, float]:
    if override is None:
        return enabled, interval_s
    if override.enabled is not None:
        enabled = override.enabled
    if override.interval_s is not None:
        interval_s = override.interval_s
    return enabled, interval_s


def resolve_settings(
    registry: ModuleRegistry,
    modules: Mapping[str, ModuleOverride] | None = None,
    groups: Mapping[str, ModuleOverride] | None = None,
    default_interval_s: float = 15.0,
    min_interval_s: float = 1.0,
) -> dict[str, ModuleSettings]:
    """Effective settings: module section, then group section, then catalog defaults."""
    modules = modules or {}
    groups = groups or {}
    for module_id in modules:
        if module_id not in registry:
            logger.warning("Configuration for unknown module %s ignored", module_id)
    known_groups = set(registry.groups())
    for group in groups:
        if group not in known_groups:
            logger.warning("Configuration for unknown group %s ignored", group)

    settings: dict[str, ModuleSettings] = {}
    for module in registry:
        enabled = module.enabled
        interval_s = module.interval_s or default_interval_s
        enabled, interval_s = _apply_override(enabled, interval_s, groups.get(module.group))
        enabled, interval_s = _apply_override(enabled, interval_s, modules.get(module.id))
        if interval_s < min_interval_s:
            logger.warning(
                "Module %s interval %ss below minimum, using %ss",
                module.id,
                interval_s,
                min_interval_s,
            )
            interval_s = min_interval_s
        settings[module.id] = ModuleSettings(enabled=enabled, interval_s=float(interval_s))
    return settings


def settings_from_config(registry: ModuleRegistry, config: AppConfig) -> dict[str, ModuleSettings]:
    return resolve_settings(
        registry,
        modules=config.modules,
        groups=config.groups,
        default_interval_s=config.publish.interval_s,
        min_interval_s=config.publish.min_interval_s,
    )


class _ModuleWorker(threading.Thread):
    def __init__(
        self,
        scheduler: Scheduler,
        module: Module,
        interval_s: float,
        initial_delay_s: float = 0.0,
        predecessor: _ModuleWorker | None = None,
    ) -> None:
        super().__init__(name=f"module-{module.id}", daemon=True)
        self.scheduler = scheduler
        self.module = module
        self.interval_s = interval_s
        self.initial_delay_s = initial_delay_s
        self.predecessor = predecessor
        self.stop_event = threading.Event()
        self.mark_stale_on_exit = False

    def run(self) -> None:
        if self.predecessor is not None:
            while self.predecessor.is_alive():
                if self.stop_event.is_set():
                    return
                self.predecessor.join(_HANDOVER_POLL_S)
            self.predecessor = None

        if self.stop_event.wait(self.initial_delay_s):
            self._exit()
            return
        # Start of the last tick that was not vetoed by the backoff.
        anchor = None
        while not self.stop_event.is_set():
            started = time.monotonic()
            result = self.scheduler.tick(self.module.id)
            retry_in = self.scheduler.policy.retry_in(self.module.id)
            if result is not None or retry_in <= 0 or anchor is None:
                anchor = started
            # Next attempt at the later of one interval after the last attempt
            # and the end of any backoff.
            delay = max(anchor + self.interval_s - time.monotonic(), retry_in)
            if self.stop_event.wait(max(0.0, delay)):
                break
        self._exit()

    def _exit(self) -> None:
        if self.mark_stale_on_exit:
            self.scheduler.result_publisher.mark_stale(self.module)


class Scheduler:
    """Arms one worker per enabled module and runs collection ticks."""

    def __init__(
        self,
        registry: ModuleRegistry,
        pipeline: CollectionPipeline,
        policy: FailurePolicy,
        result_publisher: ResultPublisher,
        settings: Mapping[str, ModuleSettings] | None = None,
        connectivity: ConnectivityMonitor | None = None,
        min_interval_s: float = 1.0,
    ) -> None:
        self.registry = registry
        self.pipeline = pipeline
        self.policy = policy
        self.result_publisher = result_publisher
        self.connectivity = connectivity
        self.min_interval_s = min_interval_s
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._settings: dict[str, ModuleSettings] = dict(
            settings or resolve_settings(registry, min_interval_s=min_interval_s)
        )
        self._states: dict[str, ModuleState] = {m.id: ModuleState.IDLE for m in registry}
        self._workers: dict[str, _ModuleWorker] = {}
        self._retired: list[_ModuleWorker] = []
        self.skipped_ticks: dict[str, int] = {m.id: 0 for m in registry}
        self._started = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    def settings(self, module_id: str) -> ModuleSettings:
        with self._lock:
            return self._settings[module_id]

    def module_state(self, module_id: str) -> ModuleState:
        with self._lock:
            return self._states[module_id]

    def enabled_modules(self) -> list[Module]:
        with self._lock:
            return [m for m in self.registry if self._settings[m.id].enabled]

    def _interval(self, module_id: str) -> float:
        return max(self._settings[module_id].interval_s, self.min_interval_s)

    def tick(self, module_id: str) -> CollectionResult | None:
        """Run one scheduled tick for a module.

        Returns ``None`` when the module is disabled, already running, the
        scheduler is shutting down, or the failure policy skipped the tick.
        """
        module = self.registry.get(module_id)
        with self._lock:
            if self._stopped or not self._settings[module_id].enabled:
                return None
            if self._states[module_id] is not ModuleState.IDLE:
                self.logger.debug("Module %s still %s, tick ignored", module_id, self._states[module_id])
                return None
            self._states[module_id] = ModuleState.DUE
            interval_s = self._interval(module_id)

        try:
            if not self.policy.should_attempt(module_id):
                self.logger.debug("Module %s in backoff, tick skipped", module_id)
                with self._lock:
                    self.skipped_ticks[module_id] += 1
                return None

            with self._lock:
                self._states[module_id] = ModuleState.RUNNING
            try:
                result = self.pipeline.run(module)
            except Exception as exc:
                self.logger.exception("Module %s crashed the collection pipeline", module_id)
                result = CollectionResult(
                    module_id, utc_now(), Status.PARSE_FAILURE, reason=f"internal error: {exc}"
                )

            try:
                self.result_publisher.handle(module, result)
                if self.connectivity is not None:
                    self.connectivity.record(module, result)
            except Exception:
                self.logger.exception("Publishing results of module %s failed", module_id)
            self.policy.record_result(module_id, result.status, interval_s)
            return result
        finally:
            with self._lock:
                self._states[module_id] = ModuleState.IDLE

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            enabled = [m for m in self.registry if self._settings[m.id].enabled]
            for module in enabled:
                self._arm(module)
        self.logger.info(
            "Scheduler started with %s of %s modules enabled", len(enabled), len(self.registry)
        )
        if self.connectivity is not None:
            self.connectivity.refresh()

    def _predecessor(self, module_id: str) -> _ModuleWorker | None:
        current = self._workers.pop(module_id, None)
        if current is not None:
            self._retired.append(current)
        for worker in reversed(self._retired):
            if worker.module.id == module_id and worker.is_alive():
                return worker
        return None

    def _arm(self, module: Module, initial_delay_s: float = 0.0) -> None:
        worker = _ModuleWorker(
            self,
            module,
            self._interval(module.id),
            initial_delay_s=initial_delay_s,
            predecessor=self._predecessor(module.id),
        )
        self._workers[module.id] = worker
        worker.start()
        self.logger.debug("Module %s armed every %ss", module.id, worker.interval_s)

    def _disarm(self, module_id: str, mark_stale: bool = False) -> None:
        worker = self._workers.pop(module_id, None)
        if worker is None:
            return
        worker.mark_stale_on_exit = mark_stale
        worker.stop_event.set()
        self._retired.append(worker)

    def apply_settings(self, settings: Mapping[str, ModuleSettings]) -> list[str]:
        """Replace module settings, re-arming only modules whose settings changed."""
        changed: list[str] = []
        with self._lock:
            if self._stopped:
                return changed
            for module in self.registry:
                new = settings.get(module.id)
                old = self._settings[module.id]
                if new is None or new == old:
                    continue
                changed.append(module.id)
                self._settings[module.id] = new
                if not self._started:
                    continue
                if old.enabled and not new.enabled:
                    self.logger.info("Module %s disabled", module.id)
                    self._disarm(module.id, mark_stale=True)
                elif new.enabled and not old.enabled:
                    self.logger.info("Module %s enabled every %ss", module.id, new.interval_s)
                    self.policy.reset(module.id)
                    self._arm(module)
                elif new.enabled:
                    self.logger.info(
                        "Module %s interval %ss -> %ss", module.id, old.interval_s, new.interval_s
                    )
                    predecessor = self._workers.get(module.id)
                    if predecessor is not None:
                        predecessor.stop_event.set()
                    self._arm(module, initial_delay_s=self._interval(module.id))
            self._retired = [w for w in self._retired if w.is_alive()]
        return changed

    def run_once(self) -> list[CollectionResult]:
        """Tick every enabled module once, concurrently, and wait for all of them."""
        modules = self.enabled_modules()
        if not modules:
            return []
        with ThreadPoolExecutor(max_workers=len(modules), thread_name_prefix="once") as pool:
            results = list(pool.map(lambda m: self.tick(m.id), modules))
        if self.connectivity is not None:
            self.connectivity.refresh()
        return [result for result in results if result is not None]

    def stop(self, grace_s: float = 5.0) -> bool:
        """Cancel all workers and outstanding commands; safe to call repeatedly.

        Returns True when every worker finished within the grace period.
        """
        with self._lock:
            if self._stopped:
                return True
            self._stopped = True
            workers = list(self._workers.values()) + self._retired
            self._workers.clear()
            self._retired = []
        for worker in workers:
            worker.stop_event.set()
        self.pipeline.reader.cancel_all()

        deadline = time.monotonic() + grace_s
        stragglers = []
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                stragglers.append(worker.name)
        if stragglers:
            self.logger.warning("Workers still busy after %ss: %s", grace_s, ", ".join(stragglers))
        else:
            self.logger.info("Scheduler stopped")
        return not stragglers
