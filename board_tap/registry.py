"""Static catalog of measurable modules.

A module bundles where raw text comes from (a pseudo-file or a command), the
regular expression that extracts named fields from it, the conversion steps
that turn those fields into typed values, and the readings it produces.
Catalogs are JSON documents validated against ``schemas/module-catalog``;
everything that can be checked without touching the hardware is checked when
the catalog is loaded.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from importlib import resources
import json
import logging
from pathlib import Path
import re
import shlex
import string
from typing import Any

from board_tap.errors import RegistryError
from board_tap.schema import validate_catalog

DEFAULT_TIMEOUT_S = 5.0
BUILTIN_CATALOG = "raspberry-pi"

_REGEX_FLAGS = {
    "IGNORECASE": re.IGNORECASE,
    "MULTILINE": re.MULTILINE,
    "DOTALL": re.DOTALL,
}

# Steps that read a second field of the same record.
_FIELD_STEPS = {"ratio", "subtract_from"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSpec:
    path: str | None = None
    argv: tuple[str, ...] = ()
    timeout_s: float = DEFAULT_TIMEOUT_S

    @property
    def is_command(self) -> bool:
        return bool(self.argv)

    def describe(self) -> str:
        if self.is_command:
            return shlex.join(self.argv)
        return str(self.path)


@dataclass(frozen=True)
class ConversionStep:
    op: str
    value: float | None = None
    digits: int | None = None
    field: str | None = None
    percent: bool = False
    index: int | None = None


@dataclass(frozen=True)
class Target:
    field: str
    name: str
    type: str
    unit: str = ""
    convert: tuple[ConversionStep, ...] = ()
    minimum: float | None = None
    maximum: float | None = None

    @property
    def placeholders(self) -> tuple[str, ...]:
        return tuple(
            field_name
            for _, field_name, _, _ in string.Formatter().parse(self.name)
            if field_name
        )

    @property
    def is_templated(self) -> bool:
        return bool(self.placeholders)

    def reading_name(self, record: Mapping[str, str | None]) -> str:
        if not self.is_templated:
            return self.name
        return self.name.format_map({key: value or "" for key, value in record.items()})


@dataclass(frozen=True)
class Module:
    id: str
    group: str
    source: SourceSpec
    pattern: re.Pattern[str]
    targets: tuple[Target, ...]
    description: str = ""
    multi: bool = False
    conversion: tuple[ConversionStep, ...] = ()
    enabled: bool = True
    interval_s: float | None = None
    core: bool = False

    def static_reading_names(self) -> list[str]:
        """Reading names that do not depend on record contents."""
        return [target.name for target in self.targets if not target.is_templated]


class ModuleRegistry:
    """Read-only collection of modules keyed by id."""

    def __init__(self, modules: Iterable[Module]) -> None:
        by_id: dict[str, Module] = {}
        for module in modules:
            if module.id in by_id:
                raise RegistryError(f"Duplicate module id: {module.id}")
            by_id[module.id] = module
        if not by_id:
            raise RegistryError("Module registry is empty")
        self._modules = by_id

    def __iter__(self) -> Iterator[Module]:
        return iter(self._modules.values())

    def __len__(self) -> int:
        return len(self._modules)

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._modules

    def get(self, module_id: str) -> Module:
        try:
            return self._modules[module_id]
        except KeyError:
            raise KeyError(f"Unknown module: {module_id}") from None

    def ids(self) -> list[str]:
        return list(self._modules)

    def groups(self) -> list[str]:
        return sorted({module.group for module in self})


def _parse_steps(raw_steps: list[dict[str, Any]]) -> tuple[ConversionStep, ...]:
    steps = []
    for raw in raw_steps:
        value = raw.get("value")
        steps.append(
            ConversionStep(
                op=raw["op"],
                value=float(value) if value is not None else None,
                digits=raw.get("digits"),
                field=raw.get("field"),
                percent=bool(raw.get("percent", False)),
                index=raw.get("index"),
            )
        )
    return tuple(steps)


def _parse_source(raw: dict[str, Any]) -> SourceSpec:
    timeout_s = float(raw.get("timeout_s", DEFAULT_TIMEOUT_S))
    if "file" in raw:
        return SourceSpec(path=raw["file"], timeout_s=timeout_s)
    command = raw["command"]
    argv = shlex.split(command) if isinstance(command, str) else list(command)
    if not argv:
        raise RegistryError("Empty command line")
    return SourceSpec(argv=tuple(argv), timeout_s=timeout_s)


def _check_fields(module_id: str, groups: set[str], names: Iterable[str], what: str) -> None:
    missing = sorted(set(names) - groups)
    if missing:
        raise RegistryError(
            f"Module {module_id}: {what} {', '.join(missing)} "
            f"not captured by pattern (groups: {', '.join(sorted(groups)) or 'none'})"
        )


def parse_module(entry: dict[str, Any], min_interval_s: float = 1.0) -> Module:
    """Build a module from a schema-valid catalog entry."""
    module_id = entry["id"]
    flags = 0
    for flag in entry.get("flags", []):
        flags |= _REGEX_FLAGS[flag]
    try:
        pattern = re.compile(entry["pattern"], flags)
    except re.error as exc:
        raise RegistryError(f"Module {module_id}: invalid pattern: {exc}") from exc

    try:
        source = _parse_source(entry["source"])
    except (RegistryError, ValueError) as exc:
        raise RegistryError(f"Module {module_id}: invalid source: {exc}") from exc

    conversion = _parse_steps(entry.get("conversion", []))
    targets = tuple(
        Target(
            field=raw["field"],
            name=raw["name"],
            type=raw["type"],
            unit=raw.get("unit", ""),
            convert=_parse_steps(raw.get("convert", [])),
            minimum=raw.get("min"),
            maximum=raw.get("max"),
        )
        for raw in entry["targets"]
    )

    groups = set(pattern.groupindex)
    _check_fields(module_id, groups, (t.field for t in targets), "target field")
    for target in targets:
        _check_fields(module_id, groups, target.placeholders, "reading name placeholder")
        steps = conversion + target.convert
        _check_fields(
            module_id,
            groups,
            (step.field for step in steps if step.op in _FIELD_STEPS and step.field),
            "conversion field",
        )

    names = [target.name for target in targets]
    if len(set(names)) != len(names):
        raise RegistryError(f"Module {module_id}: duplicate reading names")

    interval_s = entry.get("interval_s")
    if interval_s is not None and interval_s < min_interval_s:
        raise RegistryError(
            f"Module {module_id}: interval_s {interval_s} below minimum {min_interval_s}"
        )

    return Module(
        id=module_id,
        group=entry.get("group", module_id.split(".", 1)[0]),
        description=entry.get("description", ""),
        source=source,
        pattern=pattern,
        multi=bool(entry.get("multi", False)),
        conversion=conversion,
        targets=targets,
        enabled=bool(entry.get("enabled", True)),
        interval_s=float(interval_s) if interval_s is not None else None,
        core=bool(entry.get("core", False)),
    )


def load_catalog_document(document: Any, origin: str = "<catalog>") -> list[dict[str, Any]]:
    errors = validate_catalog(document)
    if errors:
        raise RegistryError(f"Invalid module catalog {origin}: {'; '.join(errors)}")
    ids = [entry["id"] for entry in document["modules"]]
    duplicates = sorted({module_id for module_id in ids if ids.count(module_id) > 1})
    if duplicates:
        raise RegistryError(f"Duplicate module id in {origin}: {', '.join(duplicates)}")
    return list(document["modules"])


def load_catalog_file(path: str | Path) -> list[dict[str, Any]]:
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RegistryError(f"Module catalog not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise RegistryError(f"Unreadable module catalog {path}: {exc}") from exc
    return load_catalog_document(document, str(path))


def load_builtin_catalog(name: str = BUILTIN_CATALOG) -> list[dict[str, Any]]:
    catalog_path = resources.files("board_tap").joinpath(f"catalog/{name}.json")
    document = json.loads(catalog_path.read_text(encoding="utf-8"))
    return load_catalog_document(document, f"builtin:{name}")


def load_registry(
    extra_catalogs: Iterable[str | Path] = (),
    min_interval_s: float = 1.0,
    include_builtin: bool = True,
) -> ModuleRegistry:
    """Load the built-in catalog plus any extra catalog files.

    Entries in later catalogs replace earlier entries with the same id.
    """
    entries: dict[str, dict[str, Any]] = {}
    if include_builtin:
        for entry in load_builtin_catalog():
            entries[entry["id"]] = entry
    for path in extra_catalogs:
        for entry in load_catalog_file(path):
            if entry["id"] in entries:
                logger.info("Module %s overridden by %s", entry["id"], path)
            entries[entry["id"]] = entry

    modules = [parse_module(entry, min_interval_s) for entry in entries.values()]
    registry = ModuleRegistry(modules)
    logger.debug("Loaded %s modules: %s", len(registry), ", ".join(registry.ids()))
    return registry
