"""Tests for the single-flight job supervisor.

Jobs run /bin/sh as the "binary" so ``command`` is ``-c`` and the first
argument is the script.
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from goosegate.core.jobs import (
    BusyError,
    Job,
    JobNotFoundError,
    JobStatus,
    JobSupervisor,
    resolve_signal,
)
from goosegate.core.logbuffer import LogBuffer

SH = "/bin/sh"
LOG_MAX = 1024 * 1024


def _wait_terminal(supervisor: JobSupervisor, job_id: str, timeout: float = 10.0) -> dict:
    deadline = time.time() + timeout
    while time.time() < deadline:
        status = supervisor.status(job_id)
        if status["status"] != "running":
            return status
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish within {timeout}s")


def _wait_idle(supervisor: JobSupervisor, timeout: float = 10.0) -> None:
    deadline = time.time() + timeout
    while supervisor.running_job_id() is not None:
        if time.time() > deadline:
            raise AssertionError("slot was not released")
        time.sleep(0.05)


@pytest.fixture
def supervisor():
    return JobSupervisor()


def _start(supervisor, tmp_path, script, log_max_bytes=LOG_MAX):
    return supervisor.start("-c", [script], cwd=tmp_path, binary_path=SH, log_max_bytes=log_max_bytes)


class TestJobLifecycle:
    """Tests for start and natural exit."""

    def test_successful_job_completes(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "echo hello; echo oops 1>&2")
        assert handle.pid is not None

        status = _wait_terminal(supervisor, handle.job_id)
        _wait_idle(supervisor)

        assert status["status"] == "completed"
        assert status["exitCode"] == 0
        assert status["finishedAt"] is not None
        output = supervisor.output(handle.job_id)
        assert output["stdout"] == "hello\n"
        assert output["stderr"] == "oops\n"
        assert supervisor.running_job_id() is None

    def test_non_zero_exit_fails(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "exit 3")
        status = _wait_terminal(supervisor, handle.job_id)
        assert status["status"] == "failed"
        assert status["exitCode"] == 3

    def test_job_runs_in_cwd(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "pwd")
        _wait_terminal(supervisor, handle.job_id)
        assert supervisor.output(handle.job_id)["stdout"].strip() == str(tmp_path.resolve())

    def test_stdin_is_closed(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "cat; echo done")
        status = _wait_terminal(supervisor, handle.job_id, timeout=5.0)
        assert status["status"] == "completed"
        assert supervisor.output(handle.job_id)["stdout"] == "done\n"

    def test_output_is_bounded(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "i=0; while [ $i -lt 500 ]; do echo 0123456789; i=$((i+1)); done", log_max_bytes=1024)
        _wait_terminal(supervisor, handle.job_id)
        stdout = supervisor.output(handle.job_id)["stdout"]
        assert len(stdout.encode("utf-8")) == 1024
        assert stdout.endswith("0123456789\n")

    def test_metacharacters_are_not_interpreted(self, supervisor, tmp_path):
        # printf receives the literal string; no shell parses the argument list.
        handle = supervisor.start("%s\n", ["a;b|c"], cwd=tmp_path, binary_path="printf", log_max_bytes=LOG_MAX)
        _wait_terminal(supervisor, handle.job_id)
        assert supervisor.output(handle.job_id)["stdout"] == "a;b|c\n"

    def test_extra_env_is_passed(self, supervisor, tmp_path):
        handle = supervisor.start(
            "-c", ["echo $GOOSEGATE_TEST_VALUE"],
            cwd=tmp_path, binary_path=SH, log_max_bytes=LOG_MAX,
            env={"GOOSEGATE_TEST_VALUE": "42"},
        )
        _wait_terminal(supervisor, handle.job_id)
        assert supervisor.output(handle.job_id)["stdout"] == "42\n"


class TestSingleFlight:
    """Only one job may run at a time."""

    def test_second_start_is_busy(self, supervisor, tmp_path):
        first = _start(supervisor, tmp_path, "sleep 5")
        try:
            assert supervisor.running_job_id() == first.job_id
            with pytest.raises(BusyError) as exc_info:
                _start(supervisor, tmp_path, "echo never")
            assert exc_info.value.running_job_id == first.job_id
            assert "Concurrency is limited to 1" in str(exc_info.value)
            assert len(supervisor.list_jobs()) == 1
        finally:
            supervisor.stop(first.job_id)

    def test_slot_is_free_after_exit(self, supervisor, tmp_path):
        first = _start(supervisor, tmp_path, "true")
        _wait_terminal(supervisor, first.job_id)
        _wait_idle(supervisor)
        second = _start(supervisor, tmp_path, "true")
        assert second.job_id != first.job_id
        _wait_terminal(supervisor, second.job_id)


class TestSpawnError:
    """A binary that cannot be executed."""

    def test_spawn_error_is_recorded_not_raised(self, supervisor, tmp_path):
        handle = supervisor.start(
            "run", [], cwd=tmp_path, binary_path=str(tmp_path / "missing-goose"), log_max_bytes=LOG_MAX
        )
        assert handle.pid is None
        status = supervisor.status(handle.job_id)
        assert status["status"] == "failed"
        assert status["exitCode"] is None
        assert "[spawn error]" in supervisor.output(handle.job_id)["stderr"]
        assert supervisor.running_job_id() is None


class TestStop:
    """Tests for JobSupervisor.stop."""

    def test_stop_running_job(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "sleep 30")
        result = supervisor.stop(handle.job_id)
        assert result.ok is True
        assert result.to_dict() == {"ok": True}

        status = supervisor.status(handle.job_id)
        assert status["status"] == "canceled"
        assert status["finishedAt"] is not None
        assert supervisor.running_job_id() is None

    def test_stop_frees_slot_immediately(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "sleep 30")
        supervisor.stop(handle.job_id, "SIGINT")
        second = _start(supervisor, tmp_path, "echo next")
        assert _wait_terminal(supervisor, second.job_id)["status"] == "completed"

    def test_canceled_status_survives_exit(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "sleep 30")
        supervisor.stop(handle.job_id)
        time.sleep(0.5)
        assert supervisor.status(handle.job_id)["status"] == "canceled"

    def test_stop_unknown_job(self, supervisor):
        result = supervisor.stop("nope")
        assert result.ok is False
        assert result.reason == "not_found"

    def test_stop_finished_job(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "true")
        _wait_terminal(supervisor, handle.job_id)
        result = supervisor.stop(handle.job_id)
        assert result.to_dict() == {"ok": False, "reason": "not_running"}

    def test_stop_kill_failure_is_reported(self, supervisor, tmp_path, monkeypatch):
        handle = _start(supervisor, tmp_path, "sleep 30")

        def fail(proc, sig):
            raise PermissionError("operation not permitted")

        monkeypatch.setattr("goosegate.core.jobs._send_signal", fail)
        try:
            result = supervisor.stop(handle.job_id)
            assert result.ok is False
            assert result.reason == "kill_failed"
            assert "not permitted" in result.error
            assert supervisor.status(handle.job_id)["status"] == "running"
        finally:
            monkeypatch.undo()
            supervisor.stop(handle.job_id)


class TestQueries:
    """Tests for status, logs and listing."""

    def test_unknown_job_raises(self, supervisor):
        with pytest.raises(JobNotFoundError):
            supervisor.status("missing")
        with pytest.raises(JobNotFoundError):
            supervisor.stream_logs("missing")
        with pytest.raises(JobNotFoundError):
            supervisor.output("missing")

    def test_stream_logs_offsets(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "printf abcdef")
        _wait_terminal(supervisor, handle.job_id)
        first = supervisor.stream_logs(handle.job_id, "stdout", 0, 4)
        assert first.data == "abcd"
        assert first.is_end is False
        rest = supervisor.stream_logs(handle.job_id, "stdout", first.next_offset, 100)
        assert rest.data == "ef"
        assert rest.is_end is True

    def test_stream_logs_rejects_unknown_stream(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "true")
        _wait_terminal(supervisor, handle.job_id)
        with pytest.raises(ValueError):
            supervisor.stream_logs(handle.job_id, "stdin")

    def test_runtime_uses_clock_while_running(self, tmp_path):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        times = iter([start, start + timedelta(seconds=42)])
        supervisor = JobSupervisor(clock=lambda: next(times))
        handle = _start(supervisor, tmp_path, "sleep 30")
        try:
            assert supervisor.status(handle.job_id)["runtimeSeconds"] == 42
        finally:
            supervisor._clock = lambda: start + timedelta(seconds=50)
            supervisor.stop(handle.job_id)

    def test_list_jobs(self, supervisor, tmp_path):
        handle = _start(supervisor, tmp_path, "true")
        _wait_terminal(supervisor, handle.job_id)
        jobs = supervisor.list_jobs()
        assert [j["jobId"] for j in jobs] == [handle.job_id]
        assert jobs[0]["command"] == "-c"


class TestJobModel:
    """Tests for Job state transitions and signal parsing."""

    def _job(self):
        return Job(
            id="j", command="run", args=[], cwd="/", started_at=datetime.now(timezone.utc),
            stdout=LogBuffer(10), stderr=LogBuffer(10),
        )

    def test_terminal_status_is_final(self):
        job = self._job()
        now = datetime.now(timezone.utc)
        assert job.finish(JobStatus.CANCELED, None, now) is True
        assert job.finish(JobStatus.COMPLETED, 0, now) is False
        assert job.status is JobStatus.CANCELED

    def test_finish_requires_terminal_status(self):
        with pytest.raises(ValueError):
            self._job().finish(JobStatus.RUNNING, None, datetime.now(timezone.utc))

    @pytest.mark.parametrize("value", ["SIGTERM", "term", 15])
    def test_resolve_signal(self, value):
        assert resolve_signal(value).name == "SIGTERM"

    def test_resolve_unknown_signal(self):
        with pytest.raises(ValueError):
            resolve_signal("SIGNOPE")
