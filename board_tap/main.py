from __future__ import annotations

import argparse
import logging
import signal
import threading
import time

from board_tap.config import AppConfig, load_config
from board_tap.errors import ConfigError, RegistryError
from board_tap.failure_policy import FailurePolicy
from board_tap.logging_utils import configure_logging, resolve_log_level
from board_tap.pipeline import CollectionPipeline, Status
from board_tap.publisher import (
    ConnectivityMonitor,
    DryRunPublisher,
    MqttPublisher,
    Publisher,
    ResultPublisher,
)
from board_tap.registry import ModuleRegistry, load_registry
from board_tap.scheduler import ModuleSettings, Scheduler, settings_from_config
from board_tap.sources import SourceReader

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1

# Main thread wake-up period for connectivity refresh and reload requests.
HOUSEKEEPING_S = 1.0
STATUS_CONNECT_TIMEOUT_S = 5.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Board Tap hardware metrics agent")
    parser.add_argument(
        "--config",
        default="config/example.cfg",
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log readings without publishing to MQTT",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run every enabled module once, publish, then exit",
    )
    parser.add_argument(
        "--list-modules",
        action="store_true",
        help="Print the module registry with effective settings and exit",
    )
    parser.add_argument(
        "--publish-status",
        metavar="STATUS",
        help="Publish a status (e.g., 'sleeping', 'online') to the availability topic and exit. "
             "Useful for system sleep/wake hooks.",
    )
    return parser


def format_modules(registry: ModuleRegistry, settings: dict[str, ModuleSettings]) -> str:
    lines = []
    width = max(len(module_id) for module_id in registry.ids())
    for module in registry:
        effective = settings[module.id]
        state = "on " if effective.enabled else "off"
        lines.append(
            f"{module.id:<{width}}  {state}  {effective.interval_s:>7.1f}s  "
            f"{module.source.describe()}"
        )
    return "\n".join(lines)


def _publish_status(publisher: MqttPublisher, status: str, logger: logging.Logger) -> int:
    publisher.connect()
    deadline = time.monotonic() + STATUS_CONNECT_TIMEOUT_S
    while not publisher.connected and time.monotonic() < deadline:
        time.sleep(0.1)
    if not publisher.connected:
        logger.error("Failed to connect to MQTT broker")
        publisher.disconnect()
        return EXIT_STARTUP_FAILURE
    publisher.publish_status(status)
    # Give the network loop time to deliver the message
    time.sleep(0.5)
    publisher.disconnect()
    return EXIT_OK


def _reload(
    path: str,
    registry: ModuleRegistry,
    scheduler: Scheduler,
    current: AppConfig,
    logger: logging.Logger,
) -> AppConfig:
    logger.info("Reloading configuration from %s", path)
    try:
        config = load_config(path)
    except ConfigError as exc:
        logger.error("Reload failed, keeping running configuration: %s", exc)
        return current
    if config.collector.modules_files != current.collector.modules_files:
        logger.warning("Module catalog changes take effect after a restart")
    if config.mqtt != current.mqtt:
        logger.warning("MQTT settings take effect after a restart")
    changed = scheduler.apply_settings(settings_from_config(registry, config))
    logger.info("Configuration reloaded; %s modules re-armed", len(changed))
    return config


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("board_tap")

    try:
        config = load_config(args.config)
        registry = load_registry(
            config.collector.modules_files,
            min_interval_s=config.publish.min_interval_s,
        )
    except (ConfigError, RegistryError) as exc:
        logger.error("Startup failed: %s", exc)
        return EXIT_STARTUP_FAILURE
    settings = settings_from_config(registry, config)

    if args.list_modules:
        print(format_modules(registry, settings))
        return EXIT_OK

    if args.publish_status:
        return _publish_status(MqttPublisher(config.mqtt), args.publish_status, logger)

    if not any(s.enabled for s in settings.values()):
        logger.warning("No modules enabled; waiting for configuration changes.")

    publisher: Publisher = DryRunPublisher() if args.dry_run else MqttPublisher(config.mqtt)
    publisher.connect()

    reader = SourceReader()
    policy = FailurePolicy(
        threshold=config.collector.failure_threshold,
        max_backoff_s=config.collector.backoff_max_s,
        max_backoff_factor=config.collector.backoff_max_factor,
    )
    connectivity = ConnectivityMonitor(publisher, window_s=config.collector.connection_window_s)
    scheduler = Scheduler(
        registry,
        CollectionPipeline(reader),
        policy,
        ResultPublisher(publisher),
        settings=settings,
        connectivity=connectivity,
        min_interval_s=config.publish.min_interval_s,
    )

    if args.once:
        results = scheduler.run_once()
        failed = [r for r in results if r.status is not Status.SUCCESS]
        logger.info(
            "Single-run mode: %s modules collected, %s failed.", len(results), len(failed)
        )
        for result in failed:
            logger.info("  %s: %s (%s)", result.module_id, result.status, result.reason)
        scheduler.stop(config.collector.shutdown_grace_s)
        publisher.disconnect()
        return EXIT_OK

    stop_requested = threading.Event()
    reload_requested = threading.Event()

    def _on_stop(signum: int, _frame: object) -> None:
        logger.info("Received %s, shutting down.", signal.Signals(signum).name)
        stop_requested.set()

    signal.signal(signal.SIGTERM, _on_stop)
    signal.signal(signal.SIGINT, _on_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda _signum, _frame: reload_requested.set())

    scheduler.start()
    logger.info("Board Tap started with %s modules.", len(scheduler.enabled_modules()))
    try:
        while not stop_requested.wait(HOUSEKEEPING_S):
            connectivity.refresh()
            if reload_requested.is_set():
                reload_requested.clear()
                config = _reload(args.config, registry, scheduler, config, logger)
    except KeyboardInterrupt:
        logger.info("Board Tap interrupted.")
    finally:
        scheduler.stop(config.collector.shutdown_grace_s)
        publisher.disconnect()
        logger.info("Board Tap stopped.")
    return EXIT_OK


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
