# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from logging import getLogger
from typing import Dict, List, Optional

from attrs import define, field

from .config import DEFAULT_RESERVED_CPUS
from .converter import ConversionJob, ConversionOutcome, OutcomeStatus

logger = getLogger(__name__)


def available_cpus() -> int:
    try:
        return len(os.sched_getaffinity(0))
    except AttributeError:
        logger.debug(
            "Failed to determine number of available CPUs using"
            " os.sched_getaffinity(), using os.cpu_count()."
        )
        return os.cpu_count() or 1


def default_concurrency(reserved: int = DEFAULT_RESERVED_CPUS) -> int:
    """Leave some CPUs free but always run at least one converter"""
    return max(available_cpus() - reserved, 1)


class PoolClosedError(Exception):
    pass


@define(frozen=True)
class PoolStats:
    submitted: int
    pending: int
    active: int
    peak_active: int
    completed: Dict[OutcomeStatus, int]

    @property
    def converted(self) -> int:
        return (
            self.completed[OutcomeStatus.CONVERTED]
            + self.completed[OutcomeStatus.DELETE_FAILED]
        )

    @property
    def failed(self) -> int:
        return self.completed[OutcomeStatus.FAILED]

    @property
    def not_deleted(self) -> int:
        return self.completed[OutcomeStatus.DELETE_FAILED]


@define
class WorkerPool:
    """At most `concurrency` ConversionJobs run at once.

    submit() never blocks. `pending` counts jobs waiting for a worker and
    `active` counts running jobs, both only change under `_cond`. The pool is
    idle when both are zero.
    """

    concurrency: int
    _executor: ThreadPoolExecutor = field(init=False)
    _cond: threading.Condition = field(init=False, factory=threading.Condition)
    _submitted: int = field(init=False, default=0)
    _pending: int = field(init=False, default=0)
    _active: int = field(init=False, default=0)
    _peak_active: int = field(init=False, default=0)
    _closed: bool = field(init=False, default=False)
    _completed: Dict[OutcomeStatus, int] = field(init=False)
    _failures: List[ConversionOutcome] = field(init=False, factory=list)

    def __attrs_post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"{self.concurrency} is not a positive integer.")
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="converter"
        )
        self._completed = {status: 0 for status in OutcomeStatus}
        logger.info("Converter threadpool created. Size: %d", self.concurrency)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    @property
    def idle(self) -> bool:
        with self._cond:
            return self._is_idle()

    @property
    def failures(self) -> List[ConversionOutcome]:
        with self._cond:
            return list(self._failures)

    @property
    def stats(self) -> PoolStats:
        with self._cond:
            return PoolStats(
                submitted=self._submitted,
                pending=self._pending,
                active=self._active,
                peak_active=self._peak_active,
                completed=dict(self._completed),
            )

    def _is_idle(self) -> bool:
        return self._active == 0 and self._pending == 0

    def submit(self, job: ConversionJob) -> "Future[ConversionOutcome]":
        with self._cond:
            if self._closed:
                raise PoolClosedError("Cannot submit to a pool that is shut down.")
            self._pending += 1
            self._submitted += 1
        try:
            return self._executor.submit(self._run, job)
        except RuntimeError:
            with self._cond:
                self._pending -= 1
                self._submitted -= 1
                self._cond.notify_all()
            raise

    def submit_batch(self, jobs: Iterable[ConversionJob]) -> int:
        count = 0
        for job in jobs:
            self.submit(job)
            count += 1
        logger.debug("Submitted batch of %d jobs", count)
        return count

    def _run(self, job: ConversionJob) -> ConversionOutcome:
        with self._cond:
            self._pending -= 1
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
        outcome: Optional[ConversionOutcome] = None
        try:
            outcome = job.run()
        except Exception as e:
            logger.error(
                "Unexpected error converting %s", str(job.task.path), exc_info=e
            )
            outcome = ConversionOutcome(job.task, OutcomeStatus.FAILED, repr(e))
        finally:
            # Outcome is recorded before the pool can be seen as idle
            with self._cond:
                self._active -= 1
                if outcome is not None:
                    self._completed[outcome.status] += 1
                    if outcome.status is not OutcomeStatus.CONVERTED:
                        self._failures.append(outcome)
                self._cond.notify_all()
        return outcome

    def wait_for_backlog(self, limit: int, timeout: Optional[float] = None) -> bool:
        """Block the producer while `limit` or more jobs are waiting for a worker"""
        limit = max(limit, 1)
        with self._cond:
            return self._cond.wait_for(lambda: self._pending < limit, timeout)

    def await_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(self._is_idle, timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=False)
