"""Models for reported test results."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, TypeAlias

ResultStatus: TypeAlias = Literal["pass", "fail", "skip", "error", "collected"]


@dataclass(frozen=True, kw_only=True)
class TestResult:
    """Final outcome of a single test.

    ``error`` marks a file that could not be bundled or imported.
    ``collected`` is only produced by collect-only runs.
    """

    __test__ = False

    name: str
    full_name: str
    status: ResultStatus
    duration: float
    message: str | None = None
    location: str | None = None


@dataclass(frozen=True, kw_only=True)
class FileResult:
    """Results of all tests in one file."""

    filepath: str
    results: Sequence[TestResult]
