"""Source map v3 decoding and generated-to-original position lookup."""

import bisect
import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

BASE64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
BASE64_VALUES = {char: value for value, char in enumerate(BASE64_ALPHABET)}

VLQ_BASE_SHIFT = 5
VLQ_CONTINUATION_BIT = 1 << VLQ_BASE_SHIFT
VLQ_VALUE_MASK = VLQ_CONTINUATION_BIT - 1


class SourceMapError(ValueError):
    """Raised when a source map cannot be decoded."""


@dataclass(frozen=True, kw_only=True)
class OriginalPosition:
    """Position in an original source file.

    ``line`` is 1-based and ``column`` is 0-based, the same convention as
    ``@jridgewell/trace-mapping``.
    """

    source: str
    line: int
    column: int
    name: str | None = None


@dataclass(frozen=True)
class Segment:
    """One decoded mapping segment on a generated line."""

    generated_column: int
    source_index: int | None = None
    original_line: int | None = None
    original_column: int | None = None
    name_index: int | None = None


def decode_vlq(segment: str) -> list[int]:
    """Decode one comma-free base64 VLQ segment into signed integers."""
    values: list[int] = []
    shift = 0
    accumulator = 0

    for char in segment:
        try:
            digit = BASE64_VALUES[char]
        except KeyError:
            raise SourceMapError(f"Invalid base64 character {char!r}") from None

        accumulator += (digit & VLQ_VALUE_MASK) << shift
        if digit & VLQ_CONTINUATION_BIT:
            shift += VLQ_BASE_SHIFT
            continue

        negative = accumulator & 1
        accumulator >>= 1
        values.append(-accumulator if negative else accumulator)
        shift = 0
        accumulator = 0

    if shift:
        raise SourceMapError(f"Truncated VLQ segment {segment!r}")
    return values


def decode_mappings(mappings: str) -> list[list[Segment]]:
    """Decode the ``mappings`` field into per-line lists sorted by column."""
    lines: list[list[Segment]] = []
    source_index = 0
    original_line = 0
    original_column = 0
    name_index = 0

    for line_text in mappings.split(";"):
        generated_column = 0
        segments: list[Segment] = []

        for raw in line_text.split(","):
            if not raw:
                continue
            fields = decode_vlq(raw)
            generated_column += fields[0]

            if len(fields) == 1:
                segments.append(Segment(generated_column))
                continue
            if len(fields) < 4:
                raise SourceMapError(f"Segment {raw!r} has {len(fields)} fields")

            source_index += fields[1]
            original_line += fields[2]
            original_column += fields[3]
            current_name: int | None = None
            if len(fields) >= 5:
                name_index += fields[4]
                current_name = name_index

            segments.append(
                Segment(
                    generated_column,
                    source_index,
                    original_line,
                    original_column,
                    current_name,
                )
            )

        segments.sort(key=lambda segment: segment.generated_column)
        lines.append(segments)

    return lines


@dataclass(frozen=True, kw_only=True)
class SourceMap:
    """A parsed source map ready for lookups."""

    sources: Sequence[str]
    names: Sequence[str]
    lines: Sequence[Sequence[Segment]]

    @classmethod
    def from_json(cls, text: str, base_dir: Path | None = None) -> "SourceMap":
        """Parse a source map document.

        Relative sources are resolved against ``sourceRoot`` and then
        ``base_dir`` when one is given.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SourceMapError(f"Invalid source map JSON: {exc}") from exc

        if not isinstance(data, dict) or data.get("version") != 3:
            raise SourceMapError("Only version 3 source maps are supported")
        if "sections" in data:
            raise SourceMapError("Indexed source maps are not supported")

        source_root = data.get("sourceRoot") or ""
        sources: list[str] = []
        for source in data.get("sources", []):
            source = f"{source_root.rstrip('/')}/{source}" if source_root else source
            if base_dir is not None and source and not Path(source).is_absolute():
                source = str((base_dir / source).resolve())
            sources.append(source)

        return cls(
            sources=sources,
            names=list(data.get("names", [])),
            lines=decode_mappings(data.get("mappings", "")),
        )

    def original_position_for(self, line: int, column: int) -> OriginalPosition | None:
        """Look up a generated position (1-based line, 0-based column).

        Returns the closest mapping at or before ``column`` on that line, or
        ``None`` when the line has no mapping there.
        """
        if line < 1 or line > len(self.lines):
            return None
        segments = self.lines[line - 1]
        if not segments:
            return None

        columns = [segment.generated_column for segment in segments]
        position = bisect.bisect_right(columns, column) - 1
        if position < 0:
            return None

        segment = segments[position]
        if segment.source_index is None or segment.original_line is None:
            return None
        if segment.source_index >= len(self.sources):
            return None

        name = None
        if segment.name_index is not None and segment.name_index < len(self.names):
            name = self.names[segment.name_index]

        return OriginalPosition(
            source=self.sources[segment.source_index],
            line=segment.original_line + 1,
            column=segment.original_column or 0,
            name=name,
        )
