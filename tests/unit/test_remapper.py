"""Tests for stack and location remapping."""

import json
import logging
from pathlib import Path
from typing import Any

import pytest

from cdp_test_pool.remapper import StackRemapper, parse_stack_frames

BUNDLE = "/bundle/math.test.js"
SOURCE = """describe('math', () => {
  it('adds', () => expect(1).toBe(2))
})
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project root holding one source file."""
    root = tmp_path.resolve()
    (root / "math.test.ts").write_text(SOURCE)
    return root


@pytest.fixture
def remapper(project: Path) -> StackRemapper:
    """Remapper with a source map for BUNDLE.

    Generated line 2 column 5 maps to line 2 column 5 of math.test.ts.
    """
    remapper = StackRemapper(project_root=project)
    sourcemap = {
        "version": 3,
        "sources": ["math.test.ts"],
        "names": [],
        "mappings": "AAAA;AACA,KAAK",
    }
    remapper.store(BUNDLE, json.dumps(sourcemap))
    return remapper


def test_store_ignores_unreadable_source_map(
    project: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Invalid maps are logged and skipped."""
    remapper = StackRemapper(project_root=project)

    with caplog.at_level(logging.WARNING):
        remapper.store(BUNDLE, "not a map")

    assert remapper.remap_position(BUNDLE, 1, 0) is None
    assert "Ignoring unreadable source map" in caplog.text


def test_remap_position(remapper: StackRemapper, project: Path) -> None:
    """Looks up positions in the stored map."""
    position = remapper.remap_position(BUNDLE, 2, 7)

    assert position is not None
    assert position.source == str(project / "math.test.ts")
    assert (position.line, position.column) == (2, 5)


def test_remap_position_unknown_file(remapper: StackRemapper) -> None:
    """Files without a map have no original position."""
    assert remapper.remap_position("/other.js", 1, 0) is None


class TestRemapStack:
    """Tests for remap_stack method."""

    def test_rewrites_bundled_frames(
        self, remapper: StackRemapper, project: Path
    ) -> None:
        """Frames pointing into the bundle get original coordinates."""
        stack = f"Error: boom\n    at check ({BUNDLE}:2:6)"

        remapped = remapper.remap_stack(stack)

        assert remapped == f"Error: boom\n    at check ({project}/math.test.ts:2:6)"

    def test_keeps_unmapped_frames(self, remapper: StackRemapper) -> None:
        """Frames in other files stay as they are."""
        stack = "Error: boom\n    at other (/lib/x.js:1:1)"

        assert remapper.remap_stack(stack) == stack

    def test_drops_runtime_frames(self, remapper: StackRemapper) -> None:
        """Frames from the injected worker runtime are filtered out."""
        stack = (
            "Error: boom\n"
            "    at runTest (cdp-test-pool://worker-runtime.js:10:3)\n"
            "    at other (/lib/x.js:1:1)"
        )

        assert remapper.remap_stack(stack) == (
            "Error: boom\n    at other (/lib/x.js:1:1)"
        )

    def test_keeps_runtime_frames_when_not_filtering(self, project: Path) -> None:
        """Runtime frames survive when filtering is disabled."""
        remapper = StackRemapper(project_root=project, filter_runtime_frames=False)
        stack = "Error\n    at runTest (cdp-test-pool://worker-runtime.js:10:3)"

        assert remapper.remap_stack(stack) == stack

    def test_unwraps_anonymous_eval_frames(
        self, remapper: StackRemapper, project: Path
    ) -> None:
        """Eval wrappers are removed and anonymous frames attributed to the file."""
        stack = (
            "Error: boom\n"
            "    at eval (eval at importFile "
            "(cdp-test-pool://worker-runtime.js:5:1), <anonymous>:2:6)"
        )

        remapped = remapper.remap_stack(stack, default_file=BUNDLE)

        assert remapped == f"Error: boom\n    at {project}/math.test.ts:2:6"

    def test_empty_stack(self, remapper: StackRemapper) -> None:
        """An empty stack is returned unchanged."""
        assert remapper.remap_stack("") == ""


class TestRemapErrors:
    """Tests for remap_errors method."""

    def test_adds_frames_and_code_frame(
        self, remapper: StackRemapper, project: Path
    ) -> None:
        """Root errors get parsed frames and a combined code frame."""
        error: dict[str, Any] = {
            "name": "AssertionError",
            "message": "expected 1 to be 2",
            "stack": f"AssertionError: expected 1 to be 2\n    at fn ({BUNDLE}:2:6)",
        }

        remapper.remap_errors([error])

        assert error["stacks"] == [
            {
                "file": f"{project}/math.test.ts",
                "line": 2,
                "column": 6,
                "method": "fn",
            }
        ]
        assert error["frame"] == "\n".join(
            [
                " ❯ fn math.test.ts:2:6",
                "      1| describe('math', () => {",
                "      2|   it('adds', () => expect(1).toBe(2))",
                "       |      ^",
                "      3| })",
                "      4| ",
            ]
        )
        assert "bundledStack" not in error

    def test_frames_with_qualified_method_names(
        self, remapper: StackRemapper, project: Path
    ) -> None:
        """Test bodies called as ``data.fn()`` still get a code frame."""
        error: dict[str, Any] = {
            "name": "Error",
            "message": "boom",
            "stack": (
                "Error: boom\n"
                f"    at Object.eval [as fn] ({BUNDLE}:2:6)\n"
                "    at runTest (cdp-test-pool://worker-runtime.js:1084:20)"
            ),
        }

        remapper.remap_errors([error])

        assert error["stacks"] == [
            {
                "file": f"{project}/math.test.ts",
                "line": 2,
                "column": 6,
                "method": "Object.eval [as fn]",
            }
        ]
        assert error["frame"].startswith(" ❯ Object.eval [as fn] math.test.ts:2:6\n")
        assert "      2|   it('adds', () => expect(1).toBe(2))" in error["frame"]

    def test_remaps_only_once(self, remapper: StackRemapper) -> None:
        """Errors that already carry parsed frames are left alone."""
        error: dict[str, Any] = {
            "name": "Error",
            "message": "x",
            "stack": f"Error: x\n    at fn ({BUNDLE}:2:6)",
            "stacks": [],
        }

        remapper.remap_errors([error])

        assert error["stack"] == f"Error: x\n    at fn ({BUNDLE}:2:6)"

    def test_remaps_cause_without_frame(self, remapper: StackRemapper) -> None:
        """Causes are remapped but get no code frame of their own."""
        cause: dict[str, Any] = {
            "name": "Error",
            "message": "inner",
            "stack": f"Error: inner\n    at fn ({BUNDLE}:2:6)",
        }
        error: dict[str, Any] = {"name": "Error", "message": "outer", "cause": cause}

        remapper.remap_errors([error])

        assert "math.test.ts:2:6" in cause["stack"]
        assert "frame" not in cause

    def test_keeps_bundled_stack_when_requested(self, project: Path) -> None:
        """The original stack is kept next to the remapped one."""
        remapper = StackRemapper(project_root=project, show_bundled_stack=True)
        remapper.store(
            BUNDLE,
            json.dumps({"version": 3, "sources": ["math.test.ts"], "mappings": "AAAA"}),
        )
        stack = f"Error\n    at {BUNDLE}:1:1"
        error: dict[str, Any] = {"name": "Error", "message": "", "stack": stack}

        remapper.remap_errors([error])

        assert error["bundledStack"] == stack


def test_remap_file_rewrites_locations_and_errors(
    remapper: StackRemapper, project: Path
) -> None:
    """Locations and errors of the whole tree are remapped in place."""
    file: dict[str, Any] = {"filepath": BUNDLE, "name": "math.test.ts", "tasks": []}
    test: dict[str, Any] = {
        "name": "adds",
        "type": "test",
        "file": file,
        "location": {"line": 2, "column": 7},
        "errors": [
            {
                "name": "Error",
                "message": "boom",
                "stack": "Error: boom\n    at <anonymous>:2:6",
            }
        ],
    }
    file["tasks"].append(test)

    remapper.remap_file(file)

    assert test["location"] == {"line": 2, "column": 6}
    assert test["errors"][0]["stack"] == (
        f"Error: boom\n    at {project}/math.test.ts:2:6"
    )


def test_generate_code_frame_missing_file(remapper: StackRemapper) -> None:
    """Unreadable files yield no code frame."""
    assert remapper.generate_code_frame("missing.ts", 1, 1) is None


def test_parse_stack_frames() -> None:
    """Both frame shapes are parsed; other lines are skipped."""
    stack = "Error: x\n    at fn (/a.ts:1:2)\n    at /b.ts:3:4\n    at native"

    assert parse_stack_frames(stack) == [
        {"file": "/a.ts", "line": 1, "column": 2, "method": "fn"},
        {"file": "/b.ts", "line": 3, "column": 4, "method": ""},
    ]


def test_parse_stack_frames_with_spaces_in_method() -> None:
    """Method names may contain spaces and brackets."""
    stack = (
        "Error: boom\n"
        "    at Object.eval [as fn] (/proj/a.test.js:4:41)\n"
        "    at async Promise.all (index 0)\n"
        "    at new Suite (/proj/b.js:1:1)"
    )

    assert parse_stack_frames(stack) == [
        {
            "file": "/proj/a.test.js",
            "line": 4,
            "column": 41,
            "method": "Object.eval [as fn]",
        },
        {"file": "/proj/b.js", "line": 1, "column": 1, "method": "new Suite"},
    ]
