"""Single-threaded worker context that owns all device I/O.

Tasks are executed one at a time in the order they were posted. A poll cycle
re-arms itself by posting the next cycle, so commands posted in the meantime
run between cycles without any locking.
"""

import logging
import queue
import threading
from typing import Any, Callable, Optional

from cux_lib.errors import LifecycleError

logger = logging.getLogger(__name__)

_QUIT = object()


class WorkerContext:
    """Background thread running a FIFO task loop.

    Lifecycle: create (any thread) -> ``start()`` -> ``on_started`` runs as the
    first task on the worker thread -> tasks -> ``quit()`` from inside a task ->
    ``on_finished`` runs on the worker thread -> thread exits. A worker can be
    started once.
    """

    def __init__(
        self,
        name: str = "CUXWorker",
        on_started: Optional[Callable[[], None]] = None,
        on_finished: Optional[Callable[[], None]] = None,
    ) -> None:
        """Initialize worker (does not start automatically).

        Args:
            name: Thread name, used in log records.
            on_started: Hook executed on the worker thread before any task.
            on_finished: Hook executed on the worker thread after the loop ends.
        """
        self._name = name
        self._on_started = on_started
        self._on_finished = on_finished
        self._tasks: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._quit_requested = False
        self._started = False

    def start(self) -> None:
        """Start the worker thread.

        Raises:
            LifecycleError: If the worker was already started once
        """
        if self._started:
            raise LifecycleError(f"Worker {self._name} already started")

        self._started = True
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.debug(f"Started worker thread {self._name}")

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Queue ``fn(*args, **kwargs)`` for execution on the worker thread."""
        self._tasks.put((fn, args, kwargs))

    def quit(self) -> None:
        """End the task loop after the current task; pending tasks are dropped."""
        self._quit_requested = True
        self._tasks.put(_QUIT)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker thread to exit.

        Returns:
            True if the thread has exited (or never ran), False on timeout
        """
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(f"Worker {self._name} did not stop within {timeout}s")
            return False
        return True

    def is_running(self) -> bool:
        """True while the worker thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def in_worker(self) -> bool:
        """True when called from the worker thread itself."""
        return self._thread is not None and threading.current_thread() is self._thread

    def _run(self) -> None:
        logger.info(f"Worker loop started (thread {threading.get_ident()})")
        try:
            if self._on_started is not None:
                self._on_started()

            while not self._quit_requested:
                item = self._tasks.get()
                if item is _QUIT:
                    break

                fn, args, kwargs = item
                try:
                    fn(*args, **kwargs)
                except Exception as e:
                    logger.error(f"Error in worker task {getattr(fn, '__name__', fn)}: {e}", exc_info=True)
        finally:
            dropped = self._tasks.qsize()
            if dropped:
                logger.debug(f"Discarding {dropped} pending worker tasks")
            if self._on_finished is not None:
                try:
                    self._on_finished()
                except Exception as e:
                    logger.error(f"Error in worker finish hook: {e}", exc_info=True)
            logger.info("Worker loop stopped")
