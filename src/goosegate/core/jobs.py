"""Single-flight job supervisor for goose subprocesses.

The supervisor owns the only concurrency slot in the system: at most one job
may be running at a time, across every command. Jobs are spawned without a
shell, their stdout/stderr are pumped into bounded LogBuffers by reader
threads, and a waiter thread records the exit status.

Cancellation is optimistic. ``stop`` delivers the signal and immediately marks
the job canceled and frees the slot; it does not wait for the OS to reap the
process. Callers that need confirmation can poll ``status``.

The registry is in memory only and is lost when the process exits.
"""

import logging
import os
import secrets
import signal as signal_module
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock, Thread
from typing import Callable, Dict, List, Optional, Sequence, Union

from .errors import GooseGateError
from .logbuffer import DEFAULT_READ_BYTES, LogBuffer, LogChunk

logger = logging.getLogger(__name__)

STREAMS = ("stdout", "stderr")
READ_CHUNK_BYTES = 65536


class BusyError(GooseGateError):
    """A job is already running; the caller should retry later."""

    def __init__(self, running_job_id: str):
        super().__init__("A job is already running. Concurrency is limited to 1.")
        self.running_job_id = running_job_id


class JobNotFoundError(GooseGateError):
    """No job is registered under the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class JobStatus(Enum):
    """Lifecycle state of a job."""
    RUNNING = "running"
    COMPLETED = "completed"  # exit code 0
    FAILED = "failed"        # non-zero exit code or spawn error
    CANCELED = "canceled"    # stopped through the supervisor

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Job:
    """A managed invocation of the goose binary."""
    id: str
    command: str
    args: List[str]
    cwd: str
    started_at: datetime
    stdout: LogBuffer
    stderr: LogBuffer
    pid: Optional[int] = None
    status: JobStatus = JobStatus.RUNNING
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False)

    def finish(self, status: JobStatus, exit_code: Optional[int], finished_at: datetime) -> bool:
        """Move the job to a terminal state.

        Returns False (and changes nothing) when the job already finished.
        """
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status.value}")
        if self.status.is_terminal:
            return False
        self.status = status
        self.finished_at = finished_at
        if exit_code is not None:
            self.exit_code = exit_code
        return True

    def buffer(self, stream: str) -> LogBuffer:
        if stream == "stdout":
            return self.stdout
        if stream == "stderr":
            return self.stderr
        raise ValueError(f"unknown stream: {stream!r} (expected stdout or stderr)")


@dataclass
class JobHandle:
    """What ``start`` returns: enough to poll the job afterwards."""
    job_id: str
    pid: Optional[int]
    started_at: datetime

    def to_dict(self) -> Dict:
        return {"jobId": self.job_id, "pid": self.pid, "startedAt": _isoformat(self.started_at)}


@dataclass
class StopResult:
    """Outcome of a stop request. Failures are reported, not raised."""
    ok: bool
    reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        data: Dict = {"ok": self.ok}
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        return data


def resolve_signal(value: Union[str, int, signal_module.Signals]) -> signal_module.Signals:
    """Turn 'SIGTERM', 'term', 15 or a Signals member into a Signals member."""
    if isinstance(value, signal_module.Signals):
        return value
    if isinstance(value, int):
        return signal_module.Signals(value)
    name = str(value).strip().upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal_module.Signals[name]
    except KeyError as e:
        raise ValueError(f"unknown signal: {value}") from e


class JobSupervisor:
    """Registry of jobs plus the single running slot."""

    def __init__(
        self,
        *,
        echo_to_console: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.echo_to_console = echo_to_console
        self._clock = clock or _utcnow
        self._jobs: Dict[str, Job] = {}
        self._running_id: Optional[str] = None
        self._lock = Lock()

    # -- queries -----------------------------------------------------------

    def running_job_id(self) -> Optional[str]:
        with self._lock:
            return self._running_id

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self) -> List[Dict]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [
            {
                "jobId": job.id,
                "command": job.command,
                "status": job.status.value,
                "startedAt": _isoformat(job.started_at),
                "finishedAt": _isoformat(job.finished_at),
                "exitCode": job.exit_code,
            }
            for job in jobs
        ]

    def status(self, job_id: str) -> Dict:
        job = self.get_job(job_id)
        with self._lock:
            status = job.status
            started_at = job.started_at
            finished_at = job.finished_at
            exit_code = job.exit_code
        end = finished_at or self._clock()
        runtime_seconds = max(0, int((end - started_at).total_seconds()))
        return {
            "jobId": job.id,
            "pid": job.pid,
            "status": status.value,
            "exitCode": exit_code,
            "startedAt": _isoformat(started_at),
            "finishedAt": _isoformat(finished_at),
            "runtimeSeconds": runtime_seconds,
        }

    def stream_logs(
        self,
        job_id: str,
        stream: str = "stdout",
        offset: int = 0,
        max_bytes: int = DEFAULT_READ_BYTES,
    ) -> LogChunk:
        job = self.get_job(job_id)
        return job.buffer(stream).read(offset, max_bytes)

    def output(self, job_id: str) -> Dict:
        job = self.get_job(job_id)
        return {
            "stdout": job.stdout.full(),
            "stderr": job.stderr.full(),
            "exitCode": job.exit_code,
        }

    # -- lifecycle ---------------------------------------------------------

    def start(
        self,
        command: str,
        args: Sequence[str],
        cwd: Union[str, Path],
        binary_path: str,
        log_max_bytes: int,
        env: Optional[Dict[str, str]] = None,
    ) -> JobHandle:
        """Spawn ``binary_path command *args`` in ``cwd`` and return at once.

        Raises:
            BusyError: If another job is running.
        """
        args = list(args)
        with self._lock:
            if self._running_id is not None:
                raise BusyError(self._running_id)

            job_id = secrets.token_hex(12)
            job = Job(
                id=job_id,
                command=command,
                args=args,
                cwd=str(cwd),
                started_at=self._clock(),
                stdout=LogBuffer(log_max_bytes),
                stderr=LogBuffer(log_max_bytes),
            )
            self._jobs[job_id] = job
            self._running_id = job_id

            try:
                proc = subprocess.Popen(
                    [binary_path, command, *args],
                    cwd=str(cwd),
                    env={**os.environ, **(env or {})},
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    shell=False,
                    start_new_session=True,
                )
            except OSError as e:
                # Recorded rather than raised: callers see it through status/logs.
                job.stderr.append(f"\n[spawn error] {e}\n")
                job.finish(JobStatus.FAILED, None, self._clock())
                self._running_id = None
                logger.warning("job %s failed to spawn %s: %s", job_id, binary_path, e)
                return JobHandle(job_id=job_id, pid=None, started_at=job.started_at)

            job.process = proc
            job.pid = proc.pid

        logger.info("job %s started: %s %s (pid %s)", job_id, command, " ".join(args), proc.pid)

        readers = [
            Thread(target=self._pump, args=(job, proc.stdout, "stdout"), daemon=True),
            Thread(target=self._pump, args=(job, proc.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()
        Thread(target=self._wait, args=(job, proc, readers), daemon=True).start()

        return JobHandle(job_id=job_id, pid=proc.pid, started_at=job.started_at)

    def stop(self, job_id: str, signal: Union[str, int] = "SIGTERM") -> StopResult:
        """Signal a running job and free the slot without waiting for exit."""
        sig = resolve_signal(signal)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return StopResult(ok=False, reason="not_found")
            if job.status is not JobStatus.RUNNING or job.process is None:
                return StopResult(ok=False, reason="not_running")

            try:
                _send_signal(job.process, sig)
            except OSError as e:
                return StopResult(ok=False, reason="kill_failed", error=str(e))

            job.finish(JobStatus.CANCELED, None, self._clock())
            if self._running_id == job_id:
                self._running_id = None

        logger.info("job %s canceled with %s", job_id, sig.name)
        return StopResult(ok=True)

    # -- background threads ------------------------------------------------

    def _pump(self, job: Job, pipe, stream: str) -> None:
        buffer = job.buffer(stream)
        try:
            while True:
                chunk = pipe.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                buffer.append(chunk)
                if self.echo_to_console:
                    text = chunk.decode("utf-8", errors="replace").rstrip()
                    if text:
                        logger.debug("[%s %s] %s", job.id[:8], stream, text)
        except (OSError, ValueError) as e:
            buffer.append(f"\n[reader error] {e}\n")
        finally:
            pipe.close()

    def _wait(self, job: Job, proc: subprocess.Popen, readers: List[Thread]) -> None:
        returncode = proc.wait()
        for reader in readers:
            reader.join(timeout=5.0)

        status = JobStatus.COMPLETED if returncode == 0 else JobStatus.FAILED
        with self._lock:
            changed = job.finish(status, returncode, self._clock())
            if job.exit_code is None:
                job.exit_code = returncode
            if self._running_id == job.id:
                self._running_id = None

        if changed:
            logger.info("job %s %s (exit code %s)", job.id, status.value, returncode)


def _send_signal(proc: subprocess.Popen, sig: signal_module.Signals) -> None:
    """Signal the job's process group, falling back to the process itself."""
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        os.kill(proc.pid, sig)
