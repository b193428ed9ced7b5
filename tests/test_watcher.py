"""Tests for git change detection and debouncing."""

import os
import time
from unittest import mock

from conftest import git
from goosegate.core.watcher import Debouncer, HeadHashPoller, RefFileSource, init_git_watcher


class FakeTimer:
    """Stand-in for threading.Timer that fires only when told to."""

    created = []

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.canceled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.canceled = True

    def fire(self):
        if not self.canceled:
            self.fn()


class TestDebouncer:
    """Tests for Debouncer."""

    def setup_method(self):
        FakeTimer.created = []

    def test_burst_collapses_to_one_call(self):
        calls = []
        debouncer = Debouncer(lambda: calls.append(1), delay=0.5, timer_factory=FakeTimer)

        debouncer.trigger()
        debouncer.trigger()
        debouncer()

        assert len(FakeTimer.created) == 3
        assert [t.canceled for t in FakeTimer.created] == [True, True, False]
        assert all(t.delay == 0.5 for t in FakeTimer.created)
        for timer in FakeTimer.created:
            timer.fire()
        assert calls == [1]
        assert debouncer.pending is False

    def test_cancel_drops_pending_call(self):
        calls = []
        debouncer = Debouncer(lambda: calls.append(1), timer_factory=FakeTimer)
        debouncer.trigger()
        assert debouncer.pending is True
        debouncer.cancel()
        FakeTimer.created[0].fire()
        assert calls == []

    def test_callback_errors_are_logged(self):
        def boom():
            raise RuntimeError("publish failed")

        debouncer = Debouncer(boom, timer_factory=FakeTimer)
        debouncer.trigger()
        with mock.patch("goosegate.core.watcher.logger") as mock_logger:
            FakeTimer.created[0].fire()
        mock_logger.exception.assert_called_once()

    def test_real_timer_fires_once(self):
        calls = []
        debouncer = Debouncer(lambda: calls.append(time.time()), delay=0.05)
        for _ in range(5):
            debouncer.trigger()
        time.sleep(0.4)
        assert len(calls) == 1


def _bump(path):
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))


class TestRefFileSource:
    """Tests for RefFileSource."""

    def test_first_poll_only_primes(self, repo):
        on_change = mock.Mock()
        source = RefFileSource(repo / ".git", on_change)
        assert source.poll_once() is False
        assert source.poll_once() is False
        on_change.assert_not_called()

    def test_detects_head_switch(self, repo):
        on_change = mock.Mock()
        source = RefFileSource(repo / ".git", on_change)
        source.poll_once()

        git(repo, "checkout", "-b", "feature/x")

        assert source.poll_once() is True
        on_change.assert_called_once_with()

    def test_detects_ref_rewrite(self, repo):
        on_change = mock.Mock()
        source = RefFileSource(repo / ".git", on_change)
        source.poll_once()
        _bump(repo / ".git" / "refs" / "heads" / "main")
        assert source.poll_once() is True

    def test_watches_current_ref_and_branch_files(self, repo):
        git(repo, "branch", "feature/y")
        source = RefFileSource(repo / ".git", mock.Mock())
        paths = {str(p.relative_to(repo / ".git")) for p in source.watched_paths()}
        assert {"HEAD", "packed-refs", "refs/heads/main", "refs/heads/feature/y"} <= paths

    def test_missing_git_dir_is_quiet(self, tmp_path):
        on_change = mock.Mock()
        source = RefFileSource(tmp_path / ".git", on_change)
        source.poll_once()
        assert source.poll_once() is False
        on_change.assert_not_called()


class TestHeadHashPoller:
    """Tests for HeadHashPoller."""

    def test_fires_only_on_change(self, tmp_path):
        heads = iter(["aaa", "aaa", "bbb", "bbb", "ccc"])
        on_change = mock.Mock()
        poller = HeadHashPoller(tmp_path, on_change, resolve_head=lambda _p: next(heads))

        results = [poller.poll_once() for _ in range(5)]

        assert results == [False, False, True, False, True]
        assert on_change.call_count == 2
        assert poller.last_hash == "ccc"

    def test_unresolvable_head_is_ignored(self, tmp_path):
        heads = iter([None, "aaa", None, "aaa"])
        on_change = mock.Mock()
        poller = HeadHashPoller(tmp_path, on_change, resolve_head=lambda _p: next(heads))
        assert [poller.poll_once() for _ in range(4)] == [False, False, False, False]
        on_change.assert_not_called()

    def test_real_commit_is_detected(self, repo):
        on_change = mock.Mock()
        poller = HeadHashPoller(repo, on_change)
        poller.poll_once()
        (repo / "page.html").write_text("x")
        git(repo, "add", "page.html")
        git(repo, "commit", "-m", "page")
        assert poller.poll_once() is True

    def test_callback_errors_do_not_stop_polling(self, tmp_path):
        heads = iter(["a", "b", "c"])
        on_change = mock.Mock(side_effect=RuntimeError("boom"))
        poller = HeadHashPoller(tmp_path, on_change, resolve_head=lambda _p: next(heads))
        poller.poll_once()
        assert poller.poll_once() is True
        assert poller.poll_once() is True


class TestInitGitWatcher:
    def test_branch_switch_triggers_callback(self, repo):
        calls = []
        dispose = init_git_watcher(repo, lambda: calls.append(1), poll_interval=0.1, ref_interval=0.05)
        try:
            git(repo, "checkout", "-b", "feature/z")
            deadline = time.time() + 5
            while not calls and time.time() < deadline:
                time.sleep(0.05)
        finally:
            dispose()
        assert calls

    def test_dispose_stops_sources(self, repo):
        calls = []
        dispose = init_git_watcher(repo, lambda: calls.append(1), poll_interval=0.05, ref_interval=0.05)
        dispose()
        git(repo, "checkout", "-b", "feature/after")
        time.sleep(0.3)
        assert calls == []
