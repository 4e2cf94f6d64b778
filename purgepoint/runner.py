"""Single-volume free-space overwrite driven by an external ``dd`` process."""
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .capacity import MB
from .config import Settings, get_settings
from .errors import DirectoryCreateFailed, WriteProcessFailed
from .logs import structured_log
from .resolver import ResolvedVolume

BYTES_RE = re.compile(r"(\d+) bytes")
DISK_FULL_MARKERS = ("No space left on device", "ENOSPC", "disk full")
ZERO_SOURCE = "/dev/zero"
RANDOM_SOURCE = "/dev/urandom"
READ_SIZE = 4096


class Outcome(str, Enum):
    COMPLETED = "completed"
    FILLED = "filled"
    CANCELLED = "cancelled"


@dataclass
class OverwriteResult:
    display_name: str
    outcome: Outcome
    bytes_written: int = 0
    budget_mb: Optional[int] = None
    returncode: Optional[int] = None
    log: str = ""


def _popen(argv: List[str]):
    return subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, bufsize=0)


def parse_bytes_written(text: str) -> Optional[int]:
    """Most recent "<n> bytes" figure in a chunk of dd output, if any."""
    matches = BYTES_RE.findall(text)
    if not matches:
        return None
    try:
        return int(matches[-1])
    except ValueError:
        return None


def is_disk_full(output: str) -> bool:
    low = output.lower()
    return any(m.lower() in low for m in DISK_FULL_MARKERS)


def working_root(volume_path: str, settings: Settings) -> str:
    # The data volume's top level is not writable; fill inside a shared subfolder
    if settings.data_volume_workdir and os.path.normpath(volume_path) == os.path.normpath(settings.data_volume_path):
        return os.path.join(volume_path, settings.data_volume_workdir)
    return volume_path


def fill_plan(budget_mb: Optional[int], chunk_mb: int, test_mode: bool = False) -> Tuple[int, Optional[int]]:
    """Block size in MB and block count for dd; a None count fills until full."""
    if test_mode:
        return chunk_mb, 1
    if budget_mb is None:
        return chunk_mb, None
    if budget_mb < chunk_mb:
        # smaller than one chunk: write the budget 1 MB at a time
        return 1, max(1, budget_mb)
    return chunk_mb, budget_mb // chunk_mb


def build_dd_args(settings: Settings, fill_path: str, use_secure_erase: bool, count: Optional[int] = None,
                  block_mb: Optional[int] = None) -> List[str]:
    source = RANDOM_SOURCE if use_secure_erase else ZERO_SOURCE
    args = [
        settings.dd_path,
        f"if={source}",
        f"of={fill_path}",
        f"bs={(block_mb or settings.chunk_mb) * MB}",
        "status=progress",
    ]
    if settings.direct_io:
        args.append("oflag=direct")
    if count is not None:
        args.append(f"count={count}")
    return args


class OverwriteTask:
    """Fill the free space of one resolved volume, then clean up after itself.

    ``run`` blocks until dd exits. ``terminate`` may be called from any other
    thread to stop it; a terminated run returns ``Outcome.CANCELLED``.
    The volume's access grant is always released before ``run`` returns.
    """

    def __init__(
        self,
        volume: ResolvedVolume,
        use_secure_erase: bool = False,
        budget_mb: Optional[int] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
        settings: Optional[Settings] = None,
        spawn: Optional[Callable[[List[str]], object]] = None,
        test_mode: bool = False,
    ):
        self.volume = volume
        self.use_secure_erase = use_secure_erase
        self.budget_mb = budget_mb
        self.on_progress = on_progress or (lambda pct: None)
        self.on_log = on_log or (lambda text: None)
        self.settings = settings or get_settings()
        self.spawn = spawn or _popen
        self.test_mode = test_mode
        self.bytes_written = 0
        self.progress = 0.0
        self._lock = threading.Lock()
        self._proc = None
        self._cancelled = False
        self._output: List[str] = []

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def terminate(self):
        with self._lock:
            self._cancelled = True
            proc = self._proc
        if proc is None:
            return
        structured_log("dd_terminate", volume=self.volume.display_name)
        try:
            proc.terminate()
        except (ProcessLookupError, OSError):
            pass

    def run(self) -> OverwriteResult:
        try:
            root = working_root(self.volume.path, self.settings)
            scratch = os.path.join(root, self.settings.scratch_dir_name)
            fill_path = os.path.join(scratch, self.settings.fill_file_name)
            try:
                os.makedirs(scratch, exist_ok=True)
            except OSError as e:
                raise DirectoryCreateFailed(scratch, e.strerror or str(e))
            structured_log("scratch_created", volume=self.volume.display_name, path=scratch)
            try:
                return self._fill(fill_path)
            finally:
                self._cleanup(fill_path, scratch)
        finally:
            self.volume.release()

    def _fill(self, fill_path: str) -> OverwriteResult:
        name = self.volume.display_name
        block_mb, count = fill_plan(self.budget_mb, self.settings.chunk_mb, self.test_mode)
        target = count * block_mb * MB if count else None
        argv = build_dd_args(self.settings, fill_path, self.use_secure_erase, count, block_mb)
        structured_log("dd_start", volume=name, argv=" ".join(argv), target_bytes=target)

        with self._lock:
            if self._cancelled:
                return OverwriteResult(name, Outcome.CANCELLED, budget_mb=self.budget_mb)
            try:
                proc = self.spawn(argv)
            except OSError as e:
                raise WriteProcessFailed(f"Failed to start dd on {name}: {e}")
            self._proc = proc

        reader = threading.Thread(target=self._pump, args=(proc.stdout, target), name=f"dd-output-{name}", daemon=True)
        reader.start()
        try:
            rc = proc.wait()
        finally:
            reader.join(timeout=5)
            if reader.is_alive():
                structured_log("dd_reader_stuck", volume=name)
            with self._lock:
                self._proc = None
        output = "".join(self._output)
        structured_log("dd_exit", volume=name, returncode=rc, bytes_written=self.bytes_written)

        if rc == 0:
            # a terminate that lost the race with a clean exit still counts as done
            outcome = Outcome.COMPLETED
            if target:
                self._report(100.0)
        elif self.cancelled:
            outcome = Outcome.CANCELLED
        elif is_disk_full(output):
            outcome = Outcome.FILLED
        else:
            raise WriteProcessFailed(f"dd exited with status {rc} on {name}", returncode=rc, log=output)
        return OverwriteResult(name, outcome, bytes_written=self.bytes_written, budget_mb=self.budget_mb, returncode=rc, log=output)

    def _pump(self, stream, target: Optional[int]):
        if stream is None:
            return
        read = getattr(stream, "read1", stream.read)
        tail = ""
        try:
            while True:
                data = read(READ_SIZE)
                if not data:
                    break
                text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
                self._output.append(text)
                self.on_log(text)
                # numbers can straddle two reads
                written = parse_bytes_written(tail + text)
                tail = text[-64:]
                if written is None:
                    continue
                self.bytes_written = max(self.bytes_written, written)
                if target:
                    self._report(min(100.0, written / target * 100))
        except (OSError, ValueError) as e:
            structured_log("dd_output_error", volume=self.volume.display_name, error=str(e))
        finally:
            try:
                stream.close()
            except (OSError, ValueError):
                pass

    def _report(self, pct: float):
        if pct <= self.progress:
            return
        self.progress = pct
        self.on_progress(pct)

    def _cleanup(self, fill_path: str, scratch: str):
        try:
            if os.path.exists(fill_path):
                os.remove(fill_path)
        except OSError as e:
            self.on_log(f"Couldn't remove fill file {fill_path}: {e}\n")
            structured_log("cleanup_failed", path=fill_path, error=str(e))
        try:
            if os.path.isdir(scratch):
                shutil.rmtree(scratch)
        except OSError as e:
            self.on_log(f"Couldn't remove folder {scratch}: {e}\n")
            structured_log("cleanup_failed", path=scratch, error=str(e))
        structured_log("scratch_removed", volume=self.volume.display_name, path=scratch)
