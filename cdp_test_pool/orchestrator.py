"""Test orchestrator driving one run of the pool worker."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from cdp_test_pool.models.result import FileResult
from cdp_test_pool.models.tasks import File
from cdp_test_pool.pool_worker import CdpPoolWorker, RunMode
from cdp_test_pool.reporting import to_file_result

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class TestOrchestrator:
    """Runs test files on a pool worker and collects their results."""

    __test__ = False

    pool: CdpPoolWorker
    root: Path

    async def run_tests(
        self, filepaths: Sequence[str], mode: RunMode = "run"
    ) -> Sequence[FileResult]:
        """Start the pool, run ``filepaths`` and stop it again.

        Args:
            filepaths: Test files, absolute or relative to ``root``
            mode: ``run`` executes tests, ``collect`` only registers them

        Returns:
            One file result per test file

        Raises:
            ConnectionLostError: If the remote runtime stops answering
            WorkerStartupError: If the runtime could not be started

        """
        if not filepaths:
            log.info("No test files provided")
            return []

        log.info("Running %d test file(s)...", len(filepaths))
        await self.pool.start()
        try:
            files = await self.pool.run_files(filepaths, mode)
        finally:
            await self.pool.stop()
        log.info("Test execution completed")

        return self._process_results(files)

    def _process_results(self, files: Sequence[File]) -> Sequence[FileResult]:
        """Flatten task trees into file results."""
        final_results: list[FileResult] = []

        for file in files:
            file_result = to_file_result(file, self.root)
            failed = sum(
                1 for r in file_result.results if r.status in {"fail", "error"}
            )
            log.info(
                "File completed: %s tests=%d failed=%d",
                file_result.filepath,
                len(file_result.results),
                failed,
            )
            final_results.append(file_result)

        return final_results
