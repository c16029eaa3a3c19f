import importlib
import logging
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.clock import SystemClock
from ..core.errors import HandlerFault, InvalidTransition, JobNotFound, StoreUnavailable
from ..models.job import Job, JobState
from ..scheduling.retry import RetryPolicy

logger = logging.getLogger(__name__)

HANDLER_NOT_REGISTERED = "handler not registered"
MAX_DETAIL_LENGTH = 2000
MAX_OUTPUT_LENGTH = 4000


@dataclass
class JobContext:
    """What a handler gets to see about the job it runs."""

    job_id: str
    job_type: str
    payload: Dict[str, Any]
    attempt: int
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


Handler = Callable[[JobContext], Any]


class HandlerRegistry:
    """Maps job type names to callables."""

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = {}
        self._lock = threading.Lock()
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, job_type: str, handler: Handler):
        if not job_type or not str(job_type).strip():
            raise ValueError("Job type cannot be empty")
        if not callable(handler):
            raise TypeError(f"Handler for {job_type!r} is not callable")
        with self._lock:
            self._handlers[job_type] = handler
        return handler

    def handler(self, job_type: str):
        """Decorator form of :meth:`register`."""
        def decorator(func):
            return self.register(job_type, func)
        return decorator

    def unregister(self, job_type: str) -> bool:
        with self._lock:
            return self._handlers.pop(job_type, None) is not None

    def get(self, job_type: str) -> Optional[Handler]:
        with self._lock:
            return self._handlers.get(job_type)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, job_type) -> bool:
        return self.get(job_type) is not None

    def register_path(self, job_type: str, path: str):
        """Register ``module:attribute`` as the handler for ``job_type``."""
        module_name, _, attr = path.partition(":")
        if not module_name or not attr:
            raise ValueError(f"Handler path must look like 'module:function', got {path!r}")
        module = importlib.import_module(module_name)
        try:
            target = getattr(module, attr)
        except AttributeError as e:
            raise ValueError(f"{module_name} has no attribute {attr!r}") from e
        return self.register(job_type, target)


def noop_handler(ctx: JobContext):
    return None


def shell_handler(ctx: JobContext) -> str:
    """Run ``payload["command"]`` in a shell. A non-zero exit is a failure."""
    command = ctx.payload.get("command")
    if not command or not str(command).strip():
        raise ValueError("shell job needs a non-empty 'command' in its payload")
    timeout = ctx.payload.get("timeout")
    deadline = time.monotonic() + float(timeout) if timeout else None

    process = subprocess.Popen(
        command,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=ctx.payload.get("cwd"),
    )
    while True:
        try:
            stdout, stderr = process.communicate(timeout=0.2)
            break
        except subprocess.TimeoutExpired:
            if ctx.cancelled:
                process.kill()
                process.communicate()
                raise RuntimeError("Command cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                process.kill()
                process.communicate()
                raise TimeoutError(f"Command timed out after {timeout}s")

    if process.returncode != 0:
        message = (stderr or "").strip() or f"exit code {process.returncode}"
        raise RuntimeError(f"Command exited with {process.returncode}: {message}")
    return stdout.strip()


BUILTIN_HANDLERS: Dict[str, Handler] = {
    "noop": noop_handler,
    "shell": shell_handler,
}


def default_registry() -> HandlerRegistry:
    return HandlerRegistry(BUILTIN_HANDLERS)


def _describe(exc: BaseException) -> str:
    detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    return detail[:MAX_DETAIL_LENGTH]


class WorkerPool:
    """A bounded set of execution slots.

    Every handler runs on its own daemon thread while a slot thread waits
    for it. On timeout the slot gives up on the handler, so a hung handler
    never holds a slot past ``job_timeout``.
    """

    def __init__(
        self,
        store,
        registry: Optional[HandlerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 4,
        job_timeout: Optional[float] = None,
        clock=None,
        report_attempts: int = 3,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.registry = registry if registry is not None else default_registry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.job_timeout = job_timeout
        self.clock = clock or getattr(store, "clock", None) or SystemClock()
        self.report_attempts = max(1, report_attempts)

        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="jobengine-worker")
        self._cond = threading.Condition()
        self._active = 0
        self._running: Dict[str, threading.Event] = {}
        self._closed = False

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    def free_slots(self) -> int:
        with self._cond:
            if self._closed:
                return 0
            return self.concurrency - self._active

    def reserve(self) -> bool:
        """Take a slot ahead of a claim. Returns False when none is free."""
        with self._cond:
            if self._closed or self._active >= self.concurrency:
                return False
            self._active += 1
            return True

    def release(self):
        """Give back a slot taken by :meth:`reserve` that was not used."""
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    def submit(self, job: Job, reserved: bool = False):
        """Run a claimed job on a free slot, or on one already reserved."""
        if not reserved:
            with self._cond:
                if self._closed:
                    raise RuntimeError("Worker pool is shut down")
                if self._active >= self.concurrency:
                    raise RuntimeError("No free worker slot")
                self._active += 1
        try:
            self._executor.submit(self._run_slot, job)
        except RuntimeError:
            self.release()
            raise

    def _run_slot(self, job: Job):
        try:
            self.process_job(job)
        except Exception:
            logger.exception(f"Worker slot crashed while processing job {job.id}")
        finally:
            self.release()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every slot is free. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout=timeout)

    def cancel(self, job_id: str) -> bool:
        """Ask a running handler to stop. Advisory only."""
        with self._cond:
            event = self._running.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def shutdown(self, wait: bool = True):
        with self._cond:
            self._closed = True
            events = list(self._running.values())
        if not wait:
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)

    def process_job(self, job: Job):
        """Execute a job already claimed into Processing and record the outcome."""
        handler = self.registry.get(job.job_type)
        if handler is None:
            logger.error(f"Job {job.id}: no handler registered for type {job.job_type!r}")
            self._report(job, lambda: self.store.transition(
                job.id,
                [JobState.PROCESSING],
                JobState.FAILED,
                completed_at=self.clock.now(),
                exception=HANDLER_NOT_REGISTERED,
            ))
            return

        ctx = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            payload=dict(job.payload),
            attempt=job.retry_count + 1,
        )
        with self._cond:
            self._running[job.id] = ctx.cancel_event

        try:
            logger.debug(f"Job {job.id} running {job.job_type} (attempt {ctx.attempt})")
            result = self._execute(handler, ctx)
        except HandlerFault as fault:
            self._report(job, lambda: self.retry_policy.handle_failure(
                self.store, job, fault.detail, self.clock.now()
            ))
            return
        finally:
            with self._cond:
                self._running.pop(job.id, None)

        output = None if result is None else str(result)[:MAX_OUTPUT_LENGTH]
        done = self._report(job, lambda: self.store.transition(
            job.id,
            [JobState.PROCESSING],
            JobState.SUCCEEDED,
            completed_at=self.clock.now(),
            output=output,
            exception=None,
        ))
        if done is not None:
            logger.info(f"Job {job.id} succeeded")

    def _execute(self, handler: Handler, ctx: JobContext):
        outcome: Dict[str, Any] = {}

        def target():
            try:
                outcome["result"] = handler(ctx)
            except BaseException as e:
                outcome["error"] = e

        thread = threading.Thread(target=target, name=f"job-{ctx.job_id}", daemon=True)
        thread.start()
        thread.join(self.job_timeout)

        if thread.is_alive():
            ctx.cancel_event.set()
            logger.warning(f"Job {ctx.job_id} exceeded {self.job_timeout:g}s, abandoning handler")
            raise HandlerFault(ctx.job_id, f"timed out after {self.job_timeout:g}s", timed_out=True)
        if "error" in outcome:
            raise HandlerFault(ctx.job_id, _describe(outcome["error"]))
        return outcome.get("result")

    def _report(self, job: Job, action: Callable[[], Job]) -> Optional[Job]:
        """Write an outcome to the store, retrying while the store is down."""
        for attempt in range(1, self.report_attempts + 1):
            try:
                return action()
            except JobNotFound:
                logger.info(f"Job {job.id} was deleted while running; outcome dropped")
                return None
            except InvalidTransition as e:
                logger.warning(f"Outcome for job {job.id} not recorded: {e}")
                return None
            except StoreUnavailable as e:
                if attempt == self.report_attempts:
                    logger.error(
                        f"Could not record outcome for job {job.id} after {attempt} attempts: {e}. "
                        f"It stays Processing until orphan recovery picks it up."
                    )
                    return None
                time.sleep(0.5 * attempt)
        return None
