# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
import signal
import threading
from contextlib import contextmanager
from logging import getLogger
from typing import Any, Dict, Iterable, Iterator, Optional

from attrs import define, field

from .pool import WorkerPool

logger = getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownWaitError(Exception):
    pass


class ShutdownState(enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


@define
class ShutdownCoordinator:
    """Turns termination signals into a single graceful drain of the pool.

    The first request moves RUNNING to DRAINING; later requests are ignored.
    wait_and_terminate() waits for the pool to go idle exactly once and
    returns the process exit code.
    """

    pool: WorkerPool
    _state: ShutdownState = field(init=False, default=ShutdownState.RUNNING)
    # Reentrant: handlers run on the main thread, possibly while it holds the lock
    _lock: threading.RLock = field(init=False, factory=threading.RLock)
    _terminate_lock: threading.Lock = field(init=False, factory=threading.Lock)
    _exit_code: Optional[int] = field(init=False, default=None)
    _drain_requested: bool = field(init=False, default=False)
    _previous: Dict[int, Any] = field(init=False, factory=dict)

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    @property
    def draining(self) -> bool:
        return self.state is ShutdownState.DRAINING

    @property
    def drain_requested(self) -> bool:
        with self._lock:
            return self._drain_requested

    def request_shutdown(self, signum: int = signal.SIGTERM, frame: Any = None) -> bool:
        with self._lock:
            if self._state is not ShutdownState.RUNNING:
                logger.debug(
                    "Ignoring %s, already %s", signal_name(signum), self._state.value
                )
                return False
            self._state = ShutdownState.DRAINING
            self._drain_requested = True
        logger.warning(
            "Received %s signal, shutting down gracefully...", signal_name(signum)
        )
        return True

    def install(self, signals: Iterable[int] = TERMINATION_SIGNALS) -> None:
        for signum in signals:
            try:
                self._previous[signum] = signal.signal(signum, self.request_shutdown)
            except ValueError:
                # signal.signal() only works in the main thread
                logger.warning(
                    "Could not install a %s handler, graceful shutdown disabled",
                    signal_name(signum),
                )

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            # None: the previous handler was not installed from Python
            if handler is not None:
                signal.signal(signum, handler)
        self._previous.clear()

    @contextmanager
    def installed(
        self, signals: Iterable[int] = TERMINATION_SIGNALS
    ) -> Iterator["ShutdownCoordinator"]:
        self.install(signals)
        try:
            yield self
        finally:
            self.restore()

    def _await_idle(self) -> None:
        self.pool.await_idle()

    def wait_and_terminate(self) -> int:
        with self._terminate_lock:
            if self._exit_code is None:
                self._exit_code = self._terminate()
            return self._exit_code

    def _terminate(self) -> int:
        try:
            self._await_idle()
            exit_code = 0
            if self.drain_requested:
                logger.info("All ongoing tasks have been completed.")
        except Exception as e:
            err = ShutdownWaitError(f"Error during shutdown: {e}")
            logger.error("%s", err, exc_info=e)
            exit_code = 1

        with self._lock:
            self._state = ShutdownState.TERMINATED
        return exit_code
