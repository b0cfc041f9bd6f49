"""Board Tap hardware metrics agent for single-board Linux computers."""

from board_tap.config import AppConfig, load_config
from board_tap.failure_policy import FailurePolicy
from board_tap.pipeline import CollectionPipeline, CollectionResult, Status
from board_tap.publisher import MqttPublisher, Quality, ResultPublisher
from board_tap.registry import ModuleRegistry, load_registry
from board_tap.scheduler import Scheduler

__all__ = [
    "AppConfig",
    "CollectionPipeline",
    "CollectionResult",
    "FailurePolicy",
    "ModuleRegistry",
    "MqttPublisher",
    "Quality",
    "ResultPublisher",
    "Scheduler",
    "Status",
    "load_config",
    "load_registry",
]
