"""Desktop notifications for finished wipe runs."""
import platform
import shutil
import subprocess
import threading

from .logs import structured_log


class Notifier:
    """Fire-and-forget notification sink. Never raises."""

    def notify(self, title: str, body: str) -> None:
        structured_log("notification", title=title, body=body)


class DesktopNotifier(Notifier):
    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def _command(self, title: str, body: str):
        system = platform.system()
        if system == "Darwin" and shutil.which("osascript"):
            script = f"display notification {_applescript_str(body)} with title {_applescript_str(title)}"
            return ["osascript", "-e", script]
        if system == "Linux" and shutil.which("notify-send"):
            return ["notify-send", title, body]
        return None

    def notify(self, title: str, body: str) -> None:
        super().notify(title, body)
        cmd = self._command(title, body)
        if not cmd:
            return
        threading.Thread(target=self._deliver, args=(cmd,), name="notify", daemon=True).start()

    def _deliver(self, cmd):
        try:
            r = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            if r.returncode != 0:
                structured_log("notification_failed", rc=r.returncode, err=r.stderr[:200])
        except (OSError, subprocess.SubprocessError) as e:
            structured_log("notification_failed", error=str(e))


def _applescript_str(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'
