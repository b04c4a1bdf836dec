# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from contextlib import nullcontext
from logging import getLogger
from pathlib import Path
from typing import List, Optional

from attrs import define, field

from .config import ConfException, Settings, validate_is_dir
from .converter import CommandConverter, ConversionJob, ConversionOutcome, Converter
from .pool import WorkerPool, default_concurrency
from .shutdown import ShutdownCoordinator
from .walker import FileTask, Walker, normalize_exclusions

logger = getLogger(__name__)


@define
class RunReport:
    converted: int = 0
    failed: int = 0
    not_deleted: int = 0
    batches: int = 0
    dropped: int = 0
    skipped_dirs: int = 0
    drained: bool = False
    exit_code: int = 0
    failures: List[ConversionOutcome] = field(factory=list)


@define
class Runner:
    settings: Settings
    walker: Walker
    converter: Converter
    pool: WorkerPool
    coordinator: ShutdownCoordinator

    @classmethod
    def from_settings(
        cls,
        src_dir: Path,
        settings: Settings,
        converter: Optional[Converter] = None,
    ) -> "Runner":
        """Build the walker, converter, pool and shutdown coordinator

        Raises:
            ConfException: src_dir or the converter could not be found.
        """
        try:
            src_dir = validate_is_dir(src_dir)
        except TypeError as e:
            raise ConfException(
                f"{src_dir} is not a valid source directory"
                " path on this operating system."
            ) from e
        except FileNotFoundError:
            raise ConfException(f"{src_dir} was not found.")

        if converter is None:
            converter = CommandConverter.from_settings(settings)

        walker = Walker(
            root=src_dir,
            exclusions=normalize_exclusions(settings.exclude),
            input_suffix=settings.input_suffix,
            skip_dirs=settings.skip_dirs,
            batch_size=settings.batch_size,
        )
        num_converters = settings.converters or default_concurrency(
            settings.reserved_cpus
        )
        pool = WorkerPool(concurrency=num_converters)
        return cls(
            settings=settings,
            walker=walker,
            converter=converter,
            pool=pool,
            coordinator=ShutdownCoordinator(pool=pool),
        )

    def _jobs(self, batch: List[FileTask]) -> List[ConversionJob]:
        return [
            ConversionJob(
                task=task,
                converter=self.converter,
                output_suffix=self.settings.output_suffix,
                delete_original=self.settings.delete_original,
            )
            for task in batch
        ]

    def _submit_all(self, report: RunReport) -> None:
        coordinator = self.coordinator
        for batch in self.walker.walk(should_stop=lambda: coordinator.draining):
            # Keep about one batch queued ahead of the converters
            self.pool.wait_for_backlog(self.settings.batch_size)
            if coordinator.draining:
                logger.info("Not submitting %d files, shutting down", len(batch))
                report.dropped += len(batch)
                break
            self.pool.submit_batch(self._jobs(batch))
            report.batches += 1

    def build_and_run(self, install_signals: bool = True) -> RunReport:
        """Walk, convert and wait for the converters to finish.

        Termination signals received while running stop the walk; already
        submitted conversions are allowed to finish.
        """
        report = RunReport()
        signals = self.coordinator.installed() if install_signals else nullcontext()
        with self.pool, signals:
            self._submit_all(report)
            report.exit_code = self.coordinator.wait_and_terminate()

        stats = self.pool.stats
        report.converted = stats.converted
        report.failed = stats.failed
        report.not_deleted = stats.not_deleted
        report.dropped += self.walker.dropped
        report.skipped_dirs = self.walker.skipped_dirs
        report.drained = self.coordinator.drain_requested
        report.failures = self.pool.failures
        if report.exit_code == 0 and not report.drained:
            logger.info("All files have been processed.")
        return report
