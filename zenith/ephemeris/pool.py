import functools
import logging
import threading
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from ..errors import OracleError
from .oracle import PositionOracle

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Set only inside process-pool workers, where each process owns one copy.
_WORKER_ORACLE: Optional[PositionOracle] = None


def _init_worker(oracle: PositionOracle) -> None:
    """
    Open an oracle copy in a worker process.

    Called once per worker so ephemeris data is loaded once and reused for
    every task the worker runs.
    """
    global _WORKER_ORACLE
    oracle.acquire()
    _WORKER_ORACLE = oracle
    logger.debug(f"Worker oracle ready: {type(oracle).__name__}")


def worker_oracle() -> PositionOracle:
    """Oracle of the current process-pool worker."""
    if _WORKER_ORACLE is None:
        raise OracleError("No oracle installed in this worker process")
    return _WORKER_ORACLE


def _worker_ready() -> bool:
    return _WORKER_ORACLE is not None


def _run_in_worker(fn: Callable[[PositionOracle, T], R], task: T) -> R:
    return fn(worker_oracle(), task)


class OraclePool:
    """
    Bounded pool that fans oracle work out over bodies and time steps.

    workers == 0 runs every task in-process, which is the default and the
    mode tests use. "process" gives each worker its own opened oracle copy;
    "thread" shares this pool's oracle and needs a thread-safe oracle.

    Task functions take (oracle, task). Serial and thread pools pass their
    own oracle, so any number of pools can be live in one process.

    Results come back in submission order and tasks share no mutable state,
    so reductions over them do not depend on scheduling.
    """

    def __init__(
        self,
        oracle: PositionOracle,
        workers: int = 0,
        executor: str = "process",
        chunk_size: int = 256
    ):
        if executor not in ("process", "thread"):
            raise ValueError(f"Invalid executor '{executor}'. Must be 'process' or 'thread'")
        if workers < 0:
            raise ValueError("Worker count must not be negative")
        if chunk_size < 1:
            raise ValueError("Chunk size must be positive")
        if workers and executor == "thread" and not oracle.thread_safe:
            raise ValueError(f"{type(oracle).__name__} is not thread-safe; use the process executor")

        self.oracle = oracle
        self.workers = workers
        self.executor = executor
        self.chunk_size = chunk_size
        self.total_tasks = 0
        self.failed_tasks = 0
        self._lock = threading.Lock()
        self._pool: Optional[Executor] = None
        self._initialized = False

        logger.info(f"Creating oracle pool: workers={workers} executor={executor if workers else 'serial'}")

    def initialize(self) -> None:
        """
        Open the oracle in this process or start the workers.

        Raises:
            OracleError: If the oracle cannot be opened
        """
        if self._initialized:
            logger.warning("Oracle pool already initialized")
            return

        if self._in_process:
            # Counted, so an oracle the caller already holds stays open after shutdown
            self.oracle.acquire()
            if self.workers:
                self._pool = ThreadPoolExecutor(max_workers=self.workers)
        else:
            self._pool = ProcessPoolExecutor(
                max_workers=self.workers,
                initializer=_init_worker,
                initargs=(self.oracle,)
            )
            try:
                if not self._pool.submit(_worker_ready).result(timeout=60.0):
                    raise OracleError("Worker initialization test failed")
            except Exception as e:
                self.shutdown()
                raise OracleError(f"Failed to initialize oracle workers: {e}") from e

        self._initialized = True
        logger.info(f"Oracle pool initialized with {self.workers or 1} worker(s)")

    @property
    def _in_process(self) -> bool:
        return self.workers == 0 or self.executor == "thread"

    def map(self, fn: Callable[[PositionOracle, T], R], tasks: Iterable[T]) -> List[R]:
        """
        Run fn(oracle, task) over tasks and return results in task order.

        fn must be a module-level function when the process executor is used;
        each worker then passes its own oracle copy.
        """
        if not self._initialized:
            raise RuntimeError("Oracle pool not initialized. Call initialize() first.")

        tasks = list(tasks)
        with self._lock:
            self.total_tasks += len(tasks)

        try:
            if self._pool is None:
                return [fn(self.oracle, task) for task in tasks]
            if self._in_process:
                return list(self._pool.map(functools.partial(fn, self.oracle), tasks))
            return list(self._pool.map(functools.partial(_run_in_worker, fn), tasks))
        except Exception:
            with self._lock:
                self.failed_tasks += 1
            raise

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "workers": self.workers,
                "executor": self.executor if self.workers else "serial",
                "chunk_size": self.chunk_size,
                "total_tasks": self.total_tasks,
                "failed_tasks": self.failed_tasks,
                "initialized": self._initialized,
                "oracle": type(self.oracle).__name__
            }

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            logger.info("Shutting down oracle pool")
            try:
                self._pool.shutdown(wait=wait)
            finally:
                self._pool = None
        if self._initialized and self._in_process:
            self.oracle.release()
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def chunked(items: List[T], size: int) -> List[List[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]
