"""Rewrite bundled-code coordinates in stacks and task locations.

Every public remap method mutates its argument in place. Task trees hold
back-references (``task["file"]``, ``task["suite"]``) that reporters rely on,
so copies would break identity.
"""

import logging
import os
import re
from collections.abc import Iterable, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cdp_test_pool.models.tasks import StackFrame, iter_tasks
from cdp_test_pool.sourcemap import OriginalPosition, SourceMap, SourceMapError
from cdp_test_pool.worker import RUNTIME_SOURCE_URL

log = logging.getLogger(__name__)

FRAME_LINE = re.compile(r"^\s+at\s+")
FRAME_WITH_METHOD = re.compile(r"^ +at (.+?) \((.+):(\d+):(\d+)\)$")
FRAME_WITHOUT_METHOD = re.compile(r"^ +at (.+):(\d+):(\d+)$")
EVAL_WRAPPER = re.compile(r"eval at [^\s(]+ \([^)]*\), ")
ANONYMOUS_LOCATION = re.compile(r"<anonymous>:(\d+):(\d+)")
UNWRAP_EVAL = re.compile(r"at eval \((.+:\d+:\d+)\)")

CODE_FRAME_INDENT = "    "
FRAME_MARKER = "❯"


@dataclass(kw_only=True)
class StackRemapper:
    """Source map store and remapping helpers for one project root."""

    project_root: Path
    show_bundled_stack: bool = False
    filter_runtime_frames: bool = True
    context_lines: int = 2
    _source_maps: dict[str, SourceMap] = field(default_factory=dict, repr=False)

    def store(self, filepath: str, sourcemap_json: str) -> None:
        """Parse and keep the source map of a bundled file.

        A map that cannot be parsed is logged and ignored; stacks for that file
        keep their bundled coordinates.
        """
        try:
            source_map = SourceMap.from_json(sourcemap_json, base_dir=self.project_root)
        except SourceMapError as exc:
            log.warning("Ignoring unreadable source map for %s: %s", filepath, exc)
            return
        self._source_maps[filepath] = source_map
        log.debug(
            "Stored source map for %s with %d source(s)",
            filepath,
            len(source_map.sources),
        )

    def remap_position(
        self, filepath: str, line: int, column: int
    ) -> OriginalPosition | None:
        """Map a generated position (1-based line, 0-based column)."""
        source_map = self._source_maps.get(filepath)
        if source_map is None:
            return None
        return source_map.original_position_for(line, column)

    def remap_stack(self, stack: str, default_file: str | None = None) -> str:
        """Rewrite every frame that points into a stored bundle.

        ``default_file`` names the bundle that anonymous eval frames belong to,
        for hosts that ignore ``sourceURL`` comments. Frames without a known
        source map are kept unchanged.
        """
        if not stack:
            return stack

        stack = EVAL_WRAPPER.sub("", stack)
        if default_file is not None:
            stack = ANONYMOUS_LOCATION.sub(
                lambda match: f"{default_file}:{match.group(1)}:{match.group(2)}",
                stack,
            )

        lines: list[str] = []
        for line in stack.split("\n"):
            if not FRAME_LINE.match(line):
                lines.append(line)
                continue
            if self.filter_runtime_frames and RUNTIME_SOURCE_URL in line:
                continue
            lines.append(self._remap_frame_line(line))
        return "\n".join(lines)

    def _remap_frame_line(self, line: str) -> str:
        for filepath in self._source_maps:
            match = re.search(rf"({re.escape(filepath)}):(\d+):(\d+)", line)
            if match is None:
                continue

            # Stack columns are 1-based, source map columns 0-based.
            position = self.remap_position(
                filepath, int(match.group(2)), int(match.group(3)) - 1
            )
            if position is None:
                continue

            remapped = line.replace(
                match.group(0),
                f"{position.source}:{position.line}:{position.column + 1}",
            )
            return UNWRAP_EVAL.sub(r"at \1", remapped)
        return line

    def remap_task_locations(self, tasks: Iterable[MutableMapping[str, Any]]) -> None:
        """Rewrite ``location`` of every task, recursively, in place."""
        for task in iter_tasks(tasks):
            location = task.get("location")
            file = task.get("file")
            if not location or not file:
                continue
            position = self.remap_position(
                file["filepath"], location["line"], max(location["column"] - 1, 0)
            )
            if position is not None:
                location["line"] = position.line
                location["column"] = position.column + 1

    def remap_errors(
        self,
        errors: Sequence[MutableMapping[str, Any]] | None,
        default_file: str | None = None,
    ) -> None:
        """Remap the stacks of task errors in place."""
        for error in errors or ():
            self._remap_error(error, default_file, is_cause=False)

    def remap_file(self, file: MutableMapping[str, Any]) -> None:
        """Remap locations and errors of a whole file tree in place."""
        self.remap_task_locations(file.get("tasks", ()))
        filepath = file.get("filepath")
        for task in iter_tasks([file]):
            self.remap_errors(task.get("errors"), default_file=filepath)

    def _remap_error(
        self,
        error: MutableMapping[str, Any],
        default_file: str | None,
        *,
        is_cause: bool,
    ) -> None:
        stack = error.get("stack")
        if isinstance(stack, str) and "stacks" not in error:
            remapped = self.remap_stack(stack, default_file)
            error["stack"] = remapped
            frames = parse_stack_frames(remapped)
            error["stacks"] = frames

            if not is_cause and not error.get("frame") and frames:
                error["frame"] = self.generate_combined_frame(frames)
            if self.show_bundled_stack and remapped != stack:
                error["bundledStack"] = stack

        cause = error.get("cause")
        if isinstance(cause, MutableMapping):
            self._remap_error(cause, default_file, is_cause=True)

    def generate_combined_frame(self, frames: Sequence[StackFrame]) -> str:
        """Render ``❯`` frame lines with a code frame after the first one."""
        result: list[str] = []
        for position, frame in enumerate(frames):
            path = self._display_path(frame["file"])
            location = f"{path}:{frame['line']}:{frame['column']}"
            label = " ".join(part for part in (frame["method"], location) if part)
            result.append(f" {FRAME_MARKER} {label}")
            if position == 0:
                code_frame = self.generate_code_frame(
                    frame["file"], frame["line"], frame["column"]
                )
                if code_frame:
                    result.append(code_frame)
        return "\n".join(result)

    def generate_code_frame(self, file: str, line: int, column: int) -> str | None:
        """Render source lines around ``line`` with a caret under ``column``.

        ``line`` and ``column`` are both 1-based. Returns ``None`` when the
        file cannot be read.
        """
        path = Path(file)
        if not path.is_absolute():
            path = self.project_root / path
        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.debug("No code frame for %s:%d:%d: %s", file, line, column, exc)
            return None

        source_lines = source.split("\n")
        start = max(0, line - 1 - self.context_lines)
        end = min(len(source_lines), line + self.context_lines)

        result: list[str] = []
        for index in range(start, end):
            number = index + 1
            content = source_lines[index].replace("\t", " ")
            result.append(f"{CODE_FRAME_INDENT}{number:>3}| {content}")
            if number == line and column > 0:
                result.append(f"{CODE_FRAME_INDENT}   | {' ' * (column - 1)}^")
        return "\n".join(result)

    def _display_path(self, file: str) -> str:
        if not os.path.isabs(file):
            return file
        try:
            return os.path.relpath(file, self.project_root)
        except ValueError:
            return file


def parse_stack_frames(stack: str) -> list[StackFrame]:
    """Parse ``at method (file:line:col)`` and ``at file:line:col`` frames."""
    frames: list[StackFrame] = []
    for line in stack.split("\n"):
        if match := FRAME_WITH_METHOD.match(line):
            method, file, line_no, column = match.groups()
        elif match := FRAME_WITHOUT_METHOD.match(line):
            method = ""
            file, line_no, column = match.groups()
        else:
            continue
        frames.append(
            StackFrame(file=file, line=int(line_no), column=int(column), method=method)
        )
    return frames
