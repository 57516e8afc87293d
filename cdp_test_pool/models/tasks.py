"""Shapes of the task trees exchanged with the worker runtime.

Trees arrive through the structural codec as plain dictionaries with shared
references: every task points at its ``file`` and parent ``suite``. They are
typed here for readers and type checkers only; nothing validates or copies
them.
"""

from collections.abc import Iterable, Iterator, MutableMapping
from typing import Any, Literal, NotRequired, TypeAlias, TypedDict

TaskStatus: TypeAlias = Literal["collected", "run", "pass", "fail", "skip"]
TaskMode: TypeAlias = Literal["run", "skip", "only", "todo"]


class StackFrame(TypedDict):
    """A parsed ``at method (file:line:col)`` frame."""

    file: str
    line: int
    column: int
    method: str


class TaskError(TypedDict):
    """Serialized error attached to a failed task."""

    name: str
    message: str
    stack: NotRequired[str]
    expected: NotRequired[Any]
    actual: NotRequired[Any]
    cause: NotRequired["TaskError"]
    stacks: NotRequired[list[StackFrame]]
    frame: NotRequired[str]
    bundledStack: NotRequired[str]


class TaskLocation(TypedDict):
    """1-based line and column of the call that declared a task."""

    line: int
    column: int


class TaskResult(TypedDict):
    """Payload of one task update."""

    status: TaskStatus
    duration: NotRequired[float]
    errors: NotRequired[list[TaskError]]


class Task(TypedDict):
    """Common fields of files, suites and tests."""

    id: str
    name: str
    type: Literal["suite", "test"]
    mode: TaskMode
    status: TaskStatus
    duration: NotRequired[float]
    errors: NotRequired[list[TaskError]]
    location: NotRequired[TaskLocation]
    file: "File"
    suite: NotRequired["Suite"]


class Suite(Task):
    """A ``describe`` block."""

    tasks: list[Task]


class File(Suite):
    """Root of a tree: one test file."""

    filepath: str


TaskUpdatePack: TypeAlias = tuple[str, TaskResult]


def iter_tasks(
    tasks: Iterable[MutableMapping[str, Any]],
) -> Iterator[MutableMapping[str, Any]]:
    """Yield every task in ``tasks`` and below, depth first."""
    for task in tasks:
        yield task
        yield from iter_tasks(task.get("tasks", ()))


def iter_tests(
    tasks: Iterable[MutableMapping[str, Any]],
) -> Iterator[MutableMapping[str, Any]]:
    """Yield only the ``test`` nodes below ``tasks``."""
    for task in iter_tasks(tasks):
        if task.get("type") == "test":
            yield task


def full_name(task: MutableMapping[str, Any]) -> str:
    """Join the names of enclosing suites and the task with ``" > "``."""
    names = [task["name"]]
    suite = task.get("suite")
    while suite is not None and "filepath" not in suite:
        names.append(suite["name"])
        suite = suite.get("suite")
    return " > ".join(reversed(names))


def generate_file_id(name: str, project_name: str = "") -> str:
    """Hash a project-relative file name the same way the worker runtime does.

    The result is a signed 32-bit integer rendered in decimal, computed over
    UTF-16 code units.
    """
    text = f"{name}{project_name}".encode("utf-16-le")
    value = 0
    for index in range(0, len(text), 2):
        code = int.from_bytes(text[index : index + 2], "little")
        value = ((value << 5) - value + code) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return str(value)
