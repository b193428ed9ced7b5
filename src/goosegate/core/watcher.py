"""Git change detection for the scope directory.

Two independent sources report "something about HEAD changed":

- RefFileSource compares (mtime, size) signatures of .git/HEAD, the ref file
  HEAD points at, .git/packed-refs and everything under .git/refs/heads.
- HeadHashPoller resolves ``git rev-parse HEAD`` on an interval and reports
  only when the hash differs from the last one seen. It catches changes the
  file signatures miss (coarse mtimes, refs rewritten in place).

Either source may fire several times for one logical branch switch, and both
may fire for the same one. Callers coalesce them with a Debouncer.
"""

import logging
import os
from pathlib import Path
from threading import Event, Lock, Thread, Timer
from typing import Callable, Dict, List, Optional, Tuple, Union

from .repo import get_head_commit, read_head_ref

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_REF_INTERVAL = 0.5
DEFAULT_DEBOUNCE_SECONDS = 0.5

Signature = Optional[Tuple[int, int]]
Callback = Callable[[], None]


class Debouncer:
    """Single pending timer: every trigger restarts it, one call fires.

    Example:
        debouncer = Debouncer(republish, delay=0.5)
        dispose = init_git_watcher(scope_dir, debouncer.trigger)
    """

    def __init__(
        self,
        callback: Callback,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        timer_factory: Callable[..., Timer] = Timer,
    ):
        self.callback = callback
        self.delay = delay
        self._timer_factory = timer_factory
        self._timer: Optional[Timer] = None
        self._lock = Lock()

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(self.delay, lambda: self._fire(timer))
            timer.daemon = True
            self._timer = timer
            timer.start()

    __call__ = trigger

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self, timer: Timer) -> None:
        with self._lock:
            if self._timer is not timer:
                return  # superseded
            self._timer = None
        try:
            self.callback()
        except Exception:
            logger.exception("debounced callback failed")


class PollingSource:
    """Base class: call ``poll_once`` every ``interval`` seconds on a thread."""

    name = "poll"

    def __init__(self, on_change: Callback, interval: float):
        self.on_change = on_change
        self.interval = interval
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def poll_once(self) -> bool:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None:
            return
        self.poll_once()
        self._thread = Thread(target=self._run, name=f"goosegate-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=self.interval + 1.0)
        self._thread = None

    def _emit(self) -> None:
        try:
            self.on_change()
        except Exception:
            logger.exception("%s change callback failed", self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("%s poll failed", self.name)


class RefFileSource(PollingSource):
    """Watch git ref files by (mtime_ns, size) signature."""

    name = "ref-watch"

    def __init__(
        self,
        git_dir: Union[str, Path],
        on_change: Callback,
        interval: float = DEFAULT_REF_INTERVAL,
    ):
        super().__init__(on_change, interval)
        self.git_dir = Path(git_dir)
        self._signatures: Optional[Dict[str, Signature]] = None

    def watched_paths(self) -> List[Path]:
        paths = [self.git_dir / "HEAD", self.git_dir / "packed-refs"]
        head_ref = read_head_ref(self.git_dir)
        if head_ref:
            paths.append(self.git_dir / head_ref)
        heads_dir = self.git_dir / "refs" / "heads"
        if heads_dir.is_dir():
            for root, _dirs, files in os.walk(heads_dir):
                paths.extend(Path(root) / name for name in files)
        return paths

    def snapshot(self) -> Dict[str, Signature]:
        signatures: Dict[str, Signature] = {}
        for path in self.watched_paths():
            try:
                stat = path.stat()
                signatures[str(path)] = (stat.st_mtime_ns, stat.st_size)
            except OSError:
                signatures[str(path)] = None
        return signatures

    def poll_once(self) -> bool:
        """Compare against the previous snapshot; the first call only primes."""
        current = self.snapshot()
        previous = self._signatures
        self._signatures = current
        if previous is None or current == previous:
            return False
        logger.debug("git ref files changed under %s", self.git_dir)
        self._emit()
        return True


class HeadHashPoller(PollingSource):
    """Fire when the commit HEAD resolves to changes."""

    name = "head-poll"

    def __init__(
        self,
        scope_dir: Union[str, Path],
        on_change: Callback,
        interval: float = DEFAULT_POLL_INTERVAL,
        resolve_head: Callable[[Path], Optional[str]] = get_head_commit,
    ):
        super().__init__(on_change, interval)
        self.scope_dir = Path(scope_dir)
        self._resolve_head = resolve_head
        self._last_hash: Optional[str] = None
        self._primed = False

    @property
    def last_hash(self) -> Optional[str]:
        return self._last_hash

    def poll_once(self) -> bool:
        head = self._resolve_head(self.scope_dir)
        if not head:
            return False
        if not self._primed:
            self._primed = True
            self._last_hash = head
            return False
        if head == self._last_hash:
            return False
        logger.debug("HEAD moved %s -> %s", self._last_hash, head)
        self._last_hash = head
        self._emit()
        return True


def init_git_watcher(
    scope_dir: Union[str, Path],
    on_change: Callback,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    ref_interval: float = DEFAULT_REF_INTERVAL,
) -> Callback:
    """Start both change sources for ``scope_dir``.

    Returns:
        A disposer that stops every source.
    """
    scope = Path(scope_dir)
    sources: List[PollingSource] = [
        RefFileSource(scope / ".git", on_change, interval=ref_interval),
        HeadHashPoller(scope, on_change, interval=poll_interval),
    ]
    for source in sources:
        source.start()
    logger.info("git watcher active for %s", scope)

    def dispose() -> None:
        for source in sources:
            source.stop()
        sources.clear()

    return dispose
