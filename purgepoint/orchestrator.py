"""Sequential free-space wipe over every selected volume."""
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .capacity import writable_budget_mb
from .config import Settings, get_settings
from .errors import DirectoryCreateFailed, NoVolumeSelected, ResolveError, WipeError, WriteProcessFailed
from .logs import structured_log
from .notify import DesktopNotifier, Notifier
from .resolver import ResolvedVolume, VolumeResolver
from .runner import Outcome, OverwriteTask, working_root
from .storage import VolumeReference

MAX_LOG_LINES = 5000
_LINE_SPLIT = re.compile(r"[\r\n]+")


@dataclass(frozen=True)
class WipeOptions:
    use_secure_erase: bool = False
    leave_safety_buffer: bool = False
    test_mode: bool = False


class WipeState:
    """Running flag, progress and log of the current run.

    Written by the wipe thread and the dd output reader, read by anyone.
    Every access goes through one lock; readers get copies.
    """

    def __init__(self, max_lines: int = MAX_LOG_LINES):
        self._lock = threading.Lock()
        self._max_lines = max_lines
        self.is_wiping = False
        self.progress = 0.0
        self.current_volume: Optional[str] = None
        self.targets: List[str] = []
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.cancelled = False
        self._lines: List[str] = []
        self._dropped = 0

    def begin(self, targets: List[str]):
        with self._lock:
            self.is_wiping = True
            self.progress = 0.0
            self.current_volume = None
            self.targets = list(targets)
            self.started_at = time.time()
            self.ended_at = None
            self.cancelled = False
            # line indices keep counting across runs
            self._dropped += len(self._lines)
            self._lines = []

    def start_volume(self, name: str):
        with self._lock:
            self.current_volume = name
            self.progress = 0.0

    def set_progress(self, pct: float):
        with self._lock:
            # never moves backwards within a volume
            if pct > self.progress:
                self.progress = min(100.0, pct)

    def finish(self, cancelled: bool = False):
        with self._lock:
            self.is_wiping = False
            self.progress = 0.0
            self.current_volume = None
            self.cancelled = cancelled
            self.ended_at = time.time()

    def append_log(self, line: str):
        with self._lock:
            self._append(line)

    def append_output(self, text: str):
        parts = [p for p in _LINE_SPLIT.split(text) if p.strip()]
        if not parts:
            return
        with self._lock:
            for p in parts:
                self._append(p)

    def _append(self, line: str):
        self._lines.append(line)
        if len(self._lines) > self._max_lines:
            extra = len(self._lines) - self._max_lines
            del self._lines[:extra]
            self._dropped += extra

    @property
    def log(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def tail(self, since: int = 0, limit: int = 200) -> Tuple[List[str], int]:
        """Lines with absolute index >= since, and the index to ask for next."""
        with self._lock:
            start = max(0, since - self._dropped)
            if start > len(self._lines):
                # index from before a restart
                start = 0
            chunk = self._lines[start:start + limit]
            return list(chunk), self._dropped + start + len(chunk)

    def snapshot(self, include_log: bool = True) -> Dict[str, Any]:
        with self._lock:
            snap = {
                "is_wiping": self.is_wiping,
                "progress": round(self.progress, 2),
                "current_volume": self.current_volume,
                "targets": list(self.targets),
                "started_at": self.started_at,
                "ended_at": self.ended_at,
                "cancelled": self.cancelled,
                "lines": self._dropped + len(self._lines),
            }
            if include_log:
                snap["log"] = "\n".join(self._lines)
            return snap


class WipeOrchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        preferences=None,
        notifier: Optional[Notifier] = None,
        resolver: Optional[VolumeResolver] = None,
        spawn: Optional[Callable[[List[str]], object]] = None,
    ):
        self.settings = settings or get_settings()
        self.preferences = preferences
        if notifier is None:
            notifier = DesktopNotifier() if self.settings.notifications_enabled else Notifier()
        self.notifier = notifier
        self.resolver = resolver or VolumeResolver(self.settings)
        self.spawn = spawn
        self.state = WipeState()
        self._start_lock = threading.Lock()
        self._task_lock = threading.Lock()
        self._cancel = threading.Event()
        self._task: Optional[OverwriteTask] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_wiping(self) -> bool:
        return self.snapshot(include_log=False)["is_wiping"]

    @property
    def progress(self) -> float:
        return self.snapshot(include_log=False)["progress"]

    def snapshot(self, include_log: bool = True) -> Dict[str, Any]:
        return self.state.snapshot(include_log=include_log)

    def options(self) -> WipeOptions:
        source = self.preferences if self.preferences is not None else self.settings
        return WipeOptions(
            use_secure_erase=bool(source.use_secure_erase),
            leave_safety_buffer=bool(source.leave_safety_buffer),
            test_mode=bool(source.test_mode),
        )

    def start(self, references: Iterable[VolumeReference]) -> bool:
        """Begin wiping; returns False when a run is already in progress."""
        references = list(references)
        if not references:
            raise NoVolumeSelected()
        with self._start_lock:
            if self.state.is_wiping:
                structured_log("wipe_start_ignored", reason="already running")
                return False
            volumes, failures = self._resolve_all(references)
            opts = self.options()
            self._cancel.clear()
            self.state.begin([v.display_name for v in volumes])
            for line in failures:
                self.state.append_log(line)
            structured_log("wipe_started", volumes=[f"{v.display_name} -> {v.path}" for v in volumes],
                           unresolved=len(failures), secure=opts.use_secure_erase,
                           buffer=opts.leave_safety_buffer, test_mode=opts.test_mode)
            self._thread = threading.Thread(target=self._run_queue, args=(volumes, opts), name="wipe-queue", daemon=True)
            self._thread.start()
        return True

    def cancel(self, timeout: Optional[float] = None) -> bool:
        """Stop the run and wait for it to go idle. False when nothing was running."""
        if not self.state.is_wiping:
            return False
        self._cancel.set()
        self.state.append_log("Cancellation requested by user.")
        structured_log("wipe_cancel_requested")
        with self._task_lock:
            task = self._task
        if task is not None:
            task.terminate()
        self.wait(self.settings.cancel_timeout if timeout is None else timeout)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return not self.state.is_wiping

    def _resolve_all(self, references: List[VolumeReference]) -> Tuple[List[ResolvedVolume], List[str]]:
        volumes, failures = [], []
        for ref in references:
            try:
                volumes.append(self.resolver.resolve(ref))
            except ResolveError as e:
                failures.append(f"Couldn't resolve bookmark for {ref.cached_display_path or ref.id}: {e.reason}")
                structured_log("resolve_failed", reference=ref.id, error=str(e))
        return volumes, failures

    def _run_queue(self, volumes: List[ResolvedVolume], opts: WipeOptions):
        succeeded = failed = 0
        try:
            for volume in volumes:
                if self._cancel.is_set():
                    break
                if self._process(volume, opts):
                    succeeded += 1
                else:
                    failed += 1
        finally:
            for volume in volumes:
                volume.release()
            cancelled = self._cancel.is_set()
            if cancelled:
                self.state.append_log(f"Wipe cancelled: {succeeded} succeeded, {failed} failed or stopped, "
                                      f"{len(volumes) - succeeded - failed} not processed.")
            else:
                self.state.append_log(f"All wipe tasks finished: {succeeded} succeeded, {failed} failed.")
            self.state.finish(cancelled=cancelled)
            structured_log("wipe_finished", succeeded=succeeded, failed=failed, cancelled=cancelled)
            if cancelled:
                self.notifier.notify("Purge Cancelled", "Free-space overwrite was cancelled")
            else:
                self.notifier.notify("Purge Complete", "Free-space overwrite finished")

    def _process(self, volume: ResolvedVolume, opts: WipeOptions) -> bool:
        name = volume.display_name
        self.state.start_volume(name)
        self.state.append_log(f"Preparing {name} (path: {volume.path})")
        if not volume.access_granted:
            self.state.append_log(f"Warning: couldn't obtain access for {name}; trying anyway.")

        budget = None
        if opts.leave_safety_buffer and not opts.test_mode:
            root = working_root(volume.path, self.settings)
            budget = writable_budget_mb(root, True, self.settings.safety_buffer_mb)
            if budget is None:
                self.state.append_log(f"Free space on {name} is unknown; filling until the volume is full.")
            else:
                self.state.append_log(f"Leaving {self.settings.safety_buffer_mb} MB free on {name}; writing up to {budget} MB.")

        task = OverwriteTask(
            volume,
            use_secure_erase=opts.use_secure_erase,
            budget_mb=budget,
            on_progress=self.state.set_progress,
            on_log=self.state.append_output,
            settings=self.settings,
            spawn=self.spawn,
            test_mode=opts.test_mode,
        )
        with self._task_lock:
            if self._cancel.is_set():
                volume.release()
                return False
            self._task = task
        try:
            result = task.run()
        except DirectoryCreateFailed as e:
            self.state.append_log(f"Can't create folder on {name}: {e}")
            return False
        except WriteProcessFailed as e:
            self.state.append_log(f"Overwrite failed on {name}: {e}")
            return False
        except WipeError as e:
            self.state.append_log(f"Overwrite failed on {name}: {e}")
            return False
        except Exception as e:
            structured_log("wipe_volume_error", volume=name, error=repr(e))
            self.state.append_log(f"Unexpected error on {name}: {e}")
            return False
        finally:
            with self._task_lock:
                self._task = None

        if result.outcome is Outcome.CANCELLED:
            self.state.append_log(f"Overwrite stopped on {name}.")
            return False
        if result.outcome is Outcome.FILLED:
            self.state.append_log(f"Overwrite complete on {name} (volume full, {result.bytes_written} bytes written).")
        else:
            self.state.append_log(f"Overwrite complete on {name} ({result.bytes_written} bytes written).")
        return True
