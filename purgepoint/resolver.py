"""Turn persisted volume bookmarks into writable, access-granted paths."""
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .bookmarks import decode_bookmark
from .config import Settings
from .errors import TargetMissing
from .logs import structured_log
from .storage import VolumeReference


class ScopedAccess:
    """Temporary access grant for a path.

    The default grant succeeds when the process may write to the directory.
    Platforms with sandbox scopes can subclass and override start/stop.
    """

    def start(self, path: str) -> bool:
        return os.access(path, os.W_OK | os.X_OK)

    def stop(self, path: str) -> None:
        return None


@dataclass
class ResolvedVolume:
    path: str
    display_name: str
    access_granted: bool = False
    _stop: Optional[Callable[[str], None]] = field(default=None, repr=False, compare=False)
    _released: bool = field(default=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def release(self):
        """Give back the access grant. Safe to call more than once."""
        with self._lock:
            if self._released:
                return
            self._released = True
        if self.access_granted and self._stop is not None:
            try:
                self._stop(self.path)
            except Exception as e:
                structured_log("access_release_failed", path=self.path, error=str(e))


class VolumeResolver:
    def __init__(self, settings: Settings, access: Optional[ScopedAccess] = None):
        self.settings = settings
        self.access = access or ScopedAccess()

    def resolve(self, ref: VolumeReference) -> ResolvedVolume:
        label = ref.cached_display_path or ref.id
        bookmark = decode_bookmark(ref.token, label)
        path = os.path.normpath(bookmark.path)

        if path == os.sep:
            structured_log("root_remapped", source=path, target=self.settings.data_volume_path)
            path = os.path.normpath(self.settings.data_volume_path)
            display = os.sep
            if path == os.sep:
                raise TargetMissing(label, "no writable data volume configured for the root volume")
        else:
            display = os.path.basename(path) or path

        if not os.path.exists(path):
            raise TargetMissing(label, f"{path} no longer exists")
        if not os.path.isdir(path):
            raise TargetMissing(label, f"{path} is not a directory")

        if bookmark.device is not None and display != os.sep:
            try:
                if os.stat(path).st_dev != bookmark.device:
                    structured_log("bookmark_stale", path=path, reference=label)
            except OSError:
                pass

        granted = False
        try:
            granted = bool(self.access.start(path))
        except Exception as e:
            structured_log("access_grant_error", path=path, error=str(e))
        return ResolvedVolume(path=path, display_name=display, access_granted=granted, _stop=self.access.stop)


PRIVACY_PANE_URL = "x-apple.systempreferences:com.apple.preference.security?Privacy_AllFiles"


def has_full_disk_access(settings: Settings) -> bool:
    """Whether the process can read a location only Full Disk Access unlocks."""
    return os.access(settings.full_disk_access_path, os.R_OK)
