import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable


class Disposition(Enum):
    SUPPRESS = "suppress"
    DEBUG = "debug"
    INFO = "info"
    ERROR = "error"
    EVENT = "event"


@dataclass
class ClassifiedLine:
    disposition: Disposition
    message: str
    rule: str | None = None
    event: dict = field(default_factory=dict)

    @property
    def level(self) -> int:
        return {
            Disposition.SUPPRESS: logging.DEBUG,
            Disposition.DEBUG: logging.DEBUG,
            Disposition.INFO: logging.INFO,
            Disposition.ERROR: logging.ERROR,
        }.get(self.disposition, logging.INFO)


@dataclass
class OutputRule:
    """`matches(line, is_error)` decides; `disposition` says what happens to the line."""
    name: str
    matches: Callable[[str, bool], bool]
    disposition: Disposition


DUPLICATE_MODULE_PREFIX = "jest-haste-map: @providesModule naming collision:"
METRO_CONSOLE_PATTERN = re.compile(r"^\s+(INFO|WARN|LOG|GROUP|DEBUG) ")
RNPM_WARNING_PREFIX = "warning: the following properties are not valid in rnpm config"
SYMLINK_SCAN_PREFIX = "Scanning folders for symlinks in "
METRO_VERBOSE_HINT = "Run CLI with --verbose flag for more details."

REPORTER_EVENT_TYPES = {
    "metro_initialize_started": "METRO_INITIALIZE_STARTED",
    "bundle_build_started": "BUILD_STARTED",
    "bundle_transform_progressed": "BUILD_PROGRESS",
    "bundle_build_failed": "BUILD_FAILED",
    "bundle_build_done": "BUILD_DONE",
}


def duplicate_module_rule(project_root) -> OutputRule:
    """Collisions between react-native and its own nested node_modules are noise."""
    rn_node_modules = re.escape(str(Path(project_root) / "node_modules" / "react-native" / "node_modules"))
    paths_pattern = re.compile(rf"Paths: {rn_node_modules}.+ collides with {rn_node_modules}.+")

    def matches(line: str, is_error: bool) -> bool:
        return is_error and line.startswith(DUPLICATE_MODULE_PREFIX) and bool(paths_pattern.search(line))

    return OutputRule("duplicate-module", matches, Disposition.SUPPRESS)


def default_rules(project_root) -> list[OutputRule]:
    return [
        duplicate_module_rule(project_root),
        OutputRule("device-console", lambda line, _: bool(METRO_CONSOLE_PATTERN.match(line)), Disposition.DEBUG),
        OutputRule("rnpm-warning", lambda line, _: line.lower().startswith(RNPM_WARNING_PREFIX), Disposition.DEBUG),
        OutputRule("symlink-scan", lambda line, _: line.startswith(SYMLINK_SCAN_PREFIX), Disposition.DEBUG),
    ]


class OutputClassifier:
    """Decides what each bundler output line becomes in the project log."""

    def __init__(self, project_root, rules: list[OutputRule] | None = None):
        self.rules = rules if rules is not None else default_rules(project_root)

    def add_rule(self, rule: OutputRule, first: bool = True) -> None:
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def classify(self, line: str, is_error: bool = False) -> ClassifiedLine | None:
        line = line.rstrip("\r\n")
        if not line.strip():
            return None

        event = parse_reporter_event(line)
        if event is not None:
            return ClassifiedLine(Disposition.EVENT, event.get("message") or event["type"], "reporter", event)

        for rule in self.rules:
            if rule.matches(line, is_error):
                return ClassifiedLine(rule.disposition, line, rule.name)

        message = line.replace(METRO_VERBOSE_HINT, "").rstrip()
        if not message:
            return None
        return ClassifiedLine(Disposition.ERROR if is_error else Disposition.INFO, message)


def parse_reporter_event(line: str) -> dict | None:
    """Structured events written by the custom log reporter as JSON lines."""
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    event_type = REPORTER_EVENT_TYPES.get(payload.get("type"))
    if not event_type:
        return None

    event = {"type": event_type}
    if event_type == "BUILD_PROGRESS":
        done = payload.get("transformedFileCount") or 0
        total = payload.get("totalFileCount") or 0
        event["progress"] = done / total if total else 0.0
    elif event_type == "BUILD_FAILED":
        error = payload.get("error") or {}
        event["message"] = error.get("message") if isinstance(error, dict) else str(error)
    elif event_type == "BUILD_DONE":
        event["message"] = "Building JavaScript bundle: finished"
    elif event_type == "METRO_INITIALIZE_STARTED":
        event["message"] = "Starting Metro Bundler"
    return event


class PackagerLogSink:
    """Routes classified bundler output into a project log."""

    def __init__(self, project_logger, classifier: OutputClassifier):
        self.logger = project_logger
        self.classifier = classifier

    def write(self, text: str, is_error: bool = False) -> None:
        classified = self.classifier.classify(text, is_error)
        if classified is None:
            return

        if classified.disposition is Disposition.EVENT:
            event = classified.event
            level = logging.DEBUG if event["type"] == "BUILD_PROGRESS" else logging.INFO
            if event["type"] == "BUILD_FAILED":
                level = logging.ERROR
            self.logger.log("metro", level, classified.message, event=event)
        else:
            self.logger.log("metro", classified.level, classified.message, rule=classified.rule)
