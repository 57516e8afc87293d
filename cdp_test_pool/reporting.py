"""Host-side reporting of collected tasks and task updates."""

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from cdp_test_pool.models.result import FileResult, ResultStatus, TestResult
from cdp_test_pool.models.tasks import File, TaskUpdatePack, full_name, iter_tests

log = logging.getLogger(__name__)

STATUS_SYMBOLS = {
    "pass": "✓",
    "fail": "×",
    "skip": "↓",
    "error": "!",
    "collected": "·",
}

TASK_TO_RESULT_STATUS: Mapping[str, ResultStatus] = {
    "pass": "pass",
    "fail": "fail",
    "skip": "skip",
    "collected": "collected",
}


class HostReporter(Protocol):
    """Receiver of live events from the worker runtime."""

    def on_collected(self, files: Sequence[File]) -> None:
        """Called once per file after its tests were registered."""

    def on_task_update(self, packs: Sequence[TaskUpdatePack]) -> None:
        """Called whenever tasks start or finish."""


@dataclass(kw_only=True)
class ProgressReporter:
    """Log test progress as updates arrive."""

    root: Path
    _names: dict[str, str] = field(default_factory=dict, repr=False)
    _tests: set[str] = field(default_factory=set, repr=False)

    def on_collected(self, files: Sequence[File]) -> None:
        """Remember test names and log how many tests each file holds."""
        for file in files:
            tests = list(iter_tests(file["tasks"]))
            for test in tests:
                self._names[test["id"]] = full_name(test)
                self._tests.add(test["id"])
            log.info(
                "Collected %d test(s) in %s",
                len(tests),
                display_path(file["filepath"], self.root),
            )

    def on_task_update(self, packs: Sequence[TaskUpdatePack]) -> None:
        """Log finished tests."""
        for task_id, result in packs:
            if task_id not in self._tests or result["status"] == "run":
                continue
            name = self._names[task_id]
            symbol = STATUS_SYMBOLS.get(result["status"], "?")
            duration = result.get("duration") or 0.0
            if result["status"] == "fail":
                log.warning("%s %s (%.0fms)", symbol, name, duration)
                for error in result.get("errors", ()):
                    log.warning("  %s: %s", error["name"], error["message"])
            else:
                log.info("%s %s (%.0fms)", symbol, name, duration)


def display_path(filepath: str, root: Path) -> str:
    """Path relative to ``root`` when it lies below it."""
    try:
        return os.path.relpath(filepath, root)
    except ValueError:
        return filepath


def error_message(errors: Sequence[Mapping[str, Any]] | None) -> str | None:
    """Summarize task errors, preferring the remapped code frame."""
    if not errors:
        return None
    parts: list[str] = []
    for error in errors:
        text = f"{error.get('name', 'Error')}: {error.get('message', '')}"
        if frame := error.get("frame"):
            text = f"{text}\n{frame}"
        parts.append(text)
    return "\n".join(parts)


def to_file_result(file: File, root: Path) -> FileResult:
    """Flatten a finished task tree into reported results."""
    relative = display_path(file["filepath"], root)
    results: list[TestResult] = []

    if file.get("errors"):
        results.append(
            TestResult(
                name=relative,
                full_name=relative,
                status="error",
                duration=(file.get("duration") or 0.0) / 1000,
                message=error_message(file.get("errors")),
                location=relative,
            )
        )

    for test in iter_tests(file["tasks"]):
        location = test.get("location")
        status = TASK_TO_RESULT_STATUS.get(test.get("status", ""), "error")
        if status == "collected" and test.get("mode") in {"skip", "todo"}:
            status = "skip"
        results.append(
            TestResult(
                name=test["name"],
                full_name=full_name(test),
                status=status,
                duration=(test.get("duration") or 0.0) / 1000,
                message=error_message(test.get("errors")),
                location=(
                    f"{relative}:{location['line']}:{location['column']}"
                    if location
                    else relative
                ),
            )
        )

    return FileResult(filepath=file["filepath"], results=results)
