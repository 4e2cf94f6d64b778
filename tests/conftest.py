import os, stat, tempfile, time
import pytest

# Must be set before purgepoint.config is imported anywhere
_TMP = tempfile.mkdtemp(prefix='purgepoint-tests-')
os.environ['PURGEPOINT_DB_PATH'] = os.path.join(_TMP, 'purgepoint.db')
os.environ['PURGEPOINT_NOTIFICATIONS_ENABLED'] = '0'
os.environ['PURGEPOINT_RATE_LIMIT_PER_MINUTE'] = '0'
os.environ['PURGEPOINT_LOG_JSON'] = '0'
os.environ.pop('PURGEPOINT_API_KEY', None)

from purgepoint.config import Settings
from purgepoint.notify import Notifier
from purgepoint.orchestrator import WipeOptions, WipeOrchestrator

# Stand-ins for dd. Every invocation appends its argv to "<script>.args"
# followed by a "---" separator, and creates the of= file like dd would.
_PREAMBLE = '''#!/bin/sh
printf '%s\\n' "$@" >> "$0.args"
echo --- >> "$0.args"
for a in "$@"; do
  case "$a" in
    of=*) : > "${a#of=}" ;;
  esac
done
'''

DD_OK = _PREAMBLE + '''printf '16777216 bytes (17 MB, 16 MiB) copied, 1 s, 16.8 MB/s\\r' >&2
printf '33554432 bytes (34 MB, 32 MiB) copied, 2 s, 16.8 MB/s\\r' >&2
printf '67108864 bytes (67 MB, 64 MiB) copied, 4 s, 16.8 MB/s\\n' >&2
exit 0
'''

DD_FULL = _PREAMBLE + '''printf '33554432 bytes (34 MB, 32 MiB) copied, 2 s, 16.8 MB/s\\r' >&2
echo "dd: error writing 'junk': No space left on device" >&2
exit 1
'''

DD_FAIL = _PREAMBLE + '''echo "dd: failed to open 'junk': Permission denied" >&2
exit 1
'''

DD_SLOW = _PREAMBLE + '''printf '1048576 bytes copied\\r' >&2
exec sleep 30
'''


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def notify(self, title, body):
        self.sent.append((title, body))


@pytest.fixture
def make_dd(tmp_path):
    def _make(body, name='dd'):
        path = tmp_path / 'bin' / name
        path.parent.mkdir(exist_ok=True)
        path.write_text(body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return _make


def _dd_calls(dd_path):
    """argv lists of every recorded fake dd invocation."""
    p = dd_path + '.args'
    if not os.path.exists(p):
        return []
    calls, cur = [], []
    for line in open(p).read().splitlines():
        if line == '---':
            calls.append(cur)
            cur = []
        else:
            cur.append(line)
    return calls


@pytest.fixture
def data_volume(tmp_path):
    d = tmp_path / 'Data'
    (d / 'Users' / 'Shared').mkdir(parents=True)
    return d


@pytest.fixture
def make_settings(tmp_path, data_volume):
    def _make(dd_path='/bin/false', **overrides):
        values = dict(
            db_path=str(tmp_path / 'test.db'),
            dd_path=dd_path,
            direct_io=False,
            data_volume_path=str(data_volume),
            data_volume_workdir='Users/Shared',
            notifications_enabled=False,
            cancel_timeout=10.0,
        )
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_orchestrator(make_settings, notifier):
    def _make(dd_path, options=None, **kw):
        return WipeOrchestrator(
            make_settings(dd_path),
            preferences=options or WipeOptions(),
            notifier=notifier,
            **kw
        )
    return _make


@pytest.fixture
def volume_dir(tmp_path):
    def _make(name):
        d = tmp_path / 'volumes' / name
        d.mkdir(parents=True)
        return d
    return _make


@pytest.fixture
def wait_for():
    def _wait(pred, timeout=5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            if pred():
                return True
            time.sleep(0.02)
        return pred()
    return _wait


@pytest.fixture
def dd_calls():
    return _dd_calls
