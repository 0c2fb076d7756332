"""Background worker that runs the OMR pipeline in a child process.

The parent side never imports OpenCV. The child loads the vision stack once,
announces readiness with a single READY message and then serves one request at
a time over a Pipe. Each submit returns a Future that resolves to exactly one
SUCCESS or ERROR message.
"""

from __future__ import annotations

import logging
import multiprocessing
import threading
from concurrent.futures import Future, InvalidStateError
from multiprocessing.connection import Connection
from typing import Any, Callable, Dict, Optional

from omr_config import DEFAULT_CONFIG, PipelineConfig
from omr_errors import ProcessingTimeoutError, VisionUnavailableError, WorkerBusyError
from omr_messages import READY, Message, error_message, ready_message, request_message

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 60.0
DEFAULT_JOB_TIMEOUT = 120.0
CANCELLED_REASON = "Processing was cancelled."


def _worker_main(conn: Connection, config_data: Dict[str, Any]) -> None:
    """Child process entry point."""

    try:
        from omr_pipeline import OMRPipeline

        pipeline = OMRPipeline(PipelineConfig.from_dict(config_data))
    except Exception as exc:
        conn.send(error_message(f"Failed to load vision library: {exc}"))
        conn.close()
        return

    conn.send(ready_message())

    while True:
        try:
            request = conn.recv()
        except EOFError:
            break
        if request is None:
            break

        try:
            result = pipeline.process(request["image"], request.get("num_questions"))
            message = result.to_message()
        except Exception as exc:
            logger.exception("Unexpected error in OMR worker")
            message = error_message(exc)
        conn.send(message)

    conn.close()


class OMRWorker:
    """Runs OMR requests off the calling thread, one at a time."""

    def __init__(
        self,
        config: PipelineConfig = DEFAULT_CONFIG,
        *,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
        start_method: str = "spawn",
        worker_main: Callable[[Connection, Dict[str, Any]], None] = _worker_main,
    ):
        self.config = config.validate()
        self.ready_timeout = ready_timeout
        self.job_timeout = job_timeout
        self._ctx = multiprocessing.get_context(start_method)
        self._worker_main = worker_main

        self._lock = threading.Lock()
        self._process: Optional[multiprocessing.process.BaseProcess] = None
        self._conn: Optional[Connection] = None
        self._ready = False
        self._job: Optional[Future] = None
        self._listener: Optional[threading.Thread] = None

    def __enter__(self) -> "OMRWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def busy(self) -> bool:
        return self._job is not None

    # -- lifecycle ---------------------------------------------------------
    def start(self) -> None:
        """Spawn the child process if it is not already running."""

        with self._lock:
            if self._process is not None and self._process.is_alive():
                return
            parent_conn, child_conn = self._ctx.Pipe()
            process = self._ctx.Process(
                target=self._worker_main,
                args=(child_conn, self.config.to_dict()),
                name="omr-worker",
                daemon=True,
            )
            process.start()
            child_conn.close()
            self._process = process
            self._conn = parent_conn
            self._ready = False
        logger.debug("Started OMR worker pid=%s", process.pid)

    def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Block until the child has loaded the vision library."""

        if self._ready:
            return
        conn = self._conn
        if conn is None:
            raise RuntimeError("OMR worker has not been started")

        timeout = self.ready_timeout if timeout is None else timeout
        if not conn.poll(timeout):
            self._terminate(close_connection=True)
            raise VisionUnavailableError(f"Vision library was not ready after {timeout:.1f}s")

        try:
            message = conn.recv()
        except (EOFError, OSError):
            self._terminate(close_connection=True)
            raise VisionUnavailableError("OMR worker exited while loading the vision library") from None

        if message.get("type") != READY:
            self._terminate(close_connection=True)
            raise VisionUnavailableError(message.get("payload") or "Failed to load vision library")

        self._ready = True
        logger.info("OMR worker ready")

    def close(self) -> None:
        self.cancel()
        with self._lock:
            process, conn = self._process, self._conn
            self._process = None
            self._conn = None
            self._ready = False
        if conn is not None:
            try:
                conn.send(None)
            except (OSError, ValueError):
                pass
        if process is not None:
            process.join(timeout=5)
            if process.is_alive():
                process.terminate()
                process.join(timeout=5)
        if conn is not None:
            conn.close()

    # -- requests ----------------------------------------------------------
    def submit(self, image: Any, num_questions: Optional[int] = None) -> "Future[Message]":
        """Send one image to the worker.

        Raises WorkerBusyError if a previous request has not resolved yet.
        """

        future: "Future[Message]" = Future()
        with self._lock:
            if self._job is not None:
                raise WorkerBusyError("An image is already being processed")
            self._job = future

        try:
            self.start()
            self.wait_ready()
        except VisionUnavailableError as exc:
            logger.error("OMR worker unavailable: %s", exc)
            self._finish(future, error_message(exc))
            return future

        with self._lock:
            conn, process = self._conn, self._process
        if conn is None:
            # cancelled while the child was starting
            self._finish(future, error_message(CANCELLED_REASON))
            return future

        try:
            conn.send(request_message(image, num_questions))
        except (OSError, ValueError) as exc:
            self._terminate(close_connection=True, process=process)
            self._finish(future, error_message(f"Failed to send image to worker: {exc}"))
            return future

        listener = threading.Thread(
            target=self._await_result,
            args=(future, conn, process),
            name="omr-worker-result",
            daemon=True,
        )
        with self._lock:
            if self._job is future:
                self._listener = listener
        listener.start()
        return future

    def process(self, image: Any, num_questions: Optional[int] = None) -> Message:
        """Submit and wait for the result message."""

        return self.submit(image, num_questions).result()

    def cancel(self) -> bool:
        """Terminate the in-flight request, if any. Returns True if one was cancelled."""

        with self._lock:
            job = self._job
            listener = self._listener
        if job is None:
            return False
        logger.info("Cancelling in-flight OMR request")
        # a running listener owns the connection and closes it on EOF
        owned = listener is not None and listener.is_alive()
        self._terminate(close_connection=not owned)
        self._finish(job, error_message(CANCELLED_REASON))
        return True

    def _await_result(self, future: "Future[Message]", conn: Connection, process) -> None:
        try:
            if conn.poll(self.job_timeout):
                message = conn.recv()
                self._finish(future, message)
                return
            logger.warning("OMR request exceeded %.1fs; terminating worker", self.job_timeout)
            message = error_message(
                ProcessingTimeoutError(f"Processing timed out after {self.job_timeout:.1f}s")
            )
        except (EOFError, OSError):
            message = error_message("OMR worker exited unexpectedly")

        # The child is gone or stuck; the next submit spawns a fresh one.
        self._terminate(close_connection=False, process=process)
        conn.close()
        self._finish(future, message)

    def _finish(self, future: "Future[Message]", message: Message) -> None:
        with self._lock:
            if self._job is future:
                self._job = None
                self._listener = None
        try:
            future.set_result(message)
        except InvalidStateError:
            # already resolved by cancel() or cancelled by the caller
            pass

    def _terminate(self, close_connection: bool, process=None) -> None:
        """Stop ``process`` (default: the current child) and forget it."""

        conn = None
        with self._lock:
            if process is None:
                process = self._process
            if process is not None and process is self._process:
                conn = self._conn
                self._process = None
                self._conn = None
                self._ready = False
        if process is not None and process.is_alive():
            process.terminate()
            process.join(timeout=5)
        if close_connection and conn is not None:
            conn.close()
