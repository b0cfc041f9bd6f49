from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import time

from board_tap.converter import Value, convert_target
from board_tap.errors import ConversionError, ExtractionError, SourceTimeout, SourceUnavailable
from board_tap.extractor import extract
from board_tap.registry import Module
from board_tap.sources import SourceReader


class Status(str, Enum):
    SUCCESS = "Success"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    PARSE_FAILURE = "ParseFailure"
    CONVERSION_FAILURE = "ConversionFailure"
    TIMEOUT = "Timeout"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Reading:
    name: str
    value: Value
    unit: str = ""
    type: str = "number"


@dataclass(frozen=True)
class ReadingFailure:
    name: str
    status: Status
    reason: str
    unit: str = ""


@dataclass
class CollectionResult:
    """Outcome of one pipeline run for one module."""

    module_id: str
    timestamp: datetime
    status: Status
    readings: list[Reading] = field(default_factory=list)
    failures: list[ReadingFailure] = field(default_factory=list)
    reason: str = ""
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCESS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CollectionPipeline:
    """Runs source reader, extractor and converter for a single module.

    Source, extraction and conversion errors never escape :meth:`run`; each
    becomes the status of the returned :class:`CollectionResult`. In multi-match mode each
    record, and each target within a record, converts independently.
    """

    def __init__(
        self,
        reader: SourceReader | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.reader = reader or SourceReader()
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    def run(self, module: Module) -> CollectionResult:
        started = time.monotonic()
        result = self._run(module)
        result.duration_s = time.monotonic() - started
        self.logger.debug(
            "Module %s finished with %s in %.3fs (%s readings, %s failures)",
            module.id,
            result.status,
            result.duration_s,
            len(result.readings),
            len(result.failures),
        )
        return result

    def _run(self, module: Module) -> CollectionResult:
        timestamp = self.clock()
        try:
            raw = self.reader.read(module.source)
        except SourceTimeout as exc:
            self.logger.warning("Module %s timed out: %s", module.id, exc)
            return CollectionResult(module.id, timestamp, Status.TIMEOUT, reason=str(exc))
        except SourceUnavailable as exc:
            self.logger.warning("Module %s source unavailable: %s", module.id, exc)
            return CollectionResult(
                module.id, timestamp, Status.SOURCE_UNAVAILABLE, reason=str(exc)
            )

        try:
            records = extract(raw, module.pattern, module.multi)
        except ExtractionError as exc:
            self.logger.error(
                "Module %s could not parse %s: %s",
                module.id,
                module.source.describe(),
                exc,
            )
            return CollectionResult(
                module.id, timestamp, Status.PARSE_FAILURE, reason=str(exc)
            )

        readings: list[Reading] = []
        failures: list[ReadingFailure] = []
        for record in records:
            for target in module.targets:
                name = target.reading_name(record)
                try:
                    value = convert_target(target, record, module.conversion)
                except ConversionError as exc:
                    self.logger.warning(
                        "Module %s: conversion of %s failed: %s", module.id, name, exc
                    )
                    failures.append(
                        ReadingFailure(name, Status.CONVERSION_FAILURE, str(exc), target.unit)
                    )
                    continue
                readings.append(Reading(name, value, target.unit, target.type))

        if failures and not readings:
            return CollectionResult(
                module.id,
                timestamp,
                Status.CONVERSION_FAILURE,
                failures=failures,
                reason=failures[0].reason,
            )
        return CollectionResult(
            module.id, timestamp, Status.SUCCESS, readings=readings, failures=failures
        )
