"""
Isolated backtest worker.

Runs a BacktestEngine in a separate process. The request is copied into the
process on start; the only channel back is a queue carrying
ProgressMessage(percent) updates followed by exactly one DoneMessage(result)
or ErrorMessage(message). Cancelling terminates the process, which discards
every piece of state of that run.

Example:
    >>> worker = BacktestWorker()
    >>> result = worker.run(request, on_progress=lambda p: print(f"{p}%"))
"""

import logging
import multiprocessing as mp
import queue
from typing import Callable, Iterator, Optional, Union

from .engine import BacktestEngine
from .models import (
    BacktestRequest,
    BacktestResult,
    DoneMessage,
    ErrorMessage,
    ProgressMessage,
)

logger = logging.getLogger(__name__)

WorkerMessage = Union[ProgressMessage, DoneMessage, ErrorMessage]


class BacktestWorkerError(RuntimeError):
    """The worker reported an error or died without a terminal message."""


def run_request(request: BacktestRequest, post: Callable[[WorkerMessage], None]) -> None:
    """
    Worker body: run one request and post the message sequence.

    Any exception is a worker failure: a single ErrorMessage is posted and
    no result at all.
    """
    try:
        engine = BacktestEngine(request.config)
        result = engine.run(
            request.markets,
            request.snapshots,
            request.outcomes,
            progress=lambda percent: post(ProgressMessage(percent)),
        )
    except Exception as e:
        logger.error(f"Backtest failed: {e}", exc_info=True)
        post(ErrorMessage(f"{type(e).__name__}: {e}"))
        return
    post(DoneMessage(result))


def _process_main(request: BacktestRequest, out: "mp.Queue") -> None:
    run_request(request, out.put)


class BacktestWorker:
    """
    Owner of one backtest process.

    Args:
        start_method: multiprocessing start method ("spawn" keeps the child
            free of any state inherited from the caller).
        poll_interval: Seconds between liveness checks while waiting.
    """

    def __init__(self, start_method: str = "spawn", poll_interval: float = 0.5) -> None:
        self._ctx = mp.get_context(start_method)
        self.poll_interval = poll_interval
        self._process: Optional[mp.process.BaseProcess] = None
        self._queue: Optional[mp.Queue] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self, request: BacktestRequest) -> None:
        if self.is_running:
            raise BacktestWorkerError("A backtest is already running")
        self._queue = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=_process_main,
            args=(request, self._queue),
            name="backtest-worker",
            daemon=True,
        )
        self._process.start()
        logger.info(f"Backtest worker started (pid {self._process.pid})")

    def messages(self) -> Iterator[WorkerMessage]:
        """
        Yield messages until the terminal one (included).

        Raises:
            BacktestWorkerError: if the process exits without a terminal message.
        """
        if self._process is None or self._queue is None:
            raise BacktestWorkerError("Worker not started")

        while True:
            try:
                message = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                if self._process.is_alive():
                    continue
                # Drain anything flushed just before exit.
                try:
                    message = self._queue.get(timeout=self.poll_interval)
                except queue.Empty:
                    code = self._process.exitcode
                    self._cleanup()
                    raise BacktestWorkerError(
                        f"Backtest worker exited unexpectedly (code {code})"
                    ) from None

            if isinstance(message, (DoneMessage, ErrorMessage)):
                self._cleanup()
                yield message
                return
            yield message

    def run(
        self,
        request: BacktestRequest,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> BacktestResult:
        """Start a run and block until it finishes."""
        self.start(request)
        for message in self.messages():
            if isinstance(message, ProgressMessage):
                if on_progress:
                    on_progress(message.percent)
            elif isinstance(message, DoneMessage):
                return message.result
            else:
                raise BacktestWorkerError(message.message)
        raise BacktestWorkerError("Backtest worker produced no result")

    def cancel(self) -> None:
        """Terminate the running backtest; its partial state is discarded."""
        if self._process is not None and self._process.is_alive():
            logger.info("Cancelling backtest worker")
            self._process.terminate()
        self._cleanup()

    def _cleanup(self) -> None:
        if self._process is not None:
            self._process.join(timeout=5)
            self._process = None
        if self._queue is not None:
            self._queue.close()
            self._queue = None
