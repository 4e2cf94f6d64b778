import io
import os
import threading
import pytest

from conftest import DD_FAIL, DD_FULL, DD_OK, DD_SLOW
from purgepoint.errors import DirectoryCreateFailed, WriteProcessFailed
from purgepoint.resolver import ResolvedVolume
from purgepoint.runner import (
    Outcome, OverwriteTask, build_dd_args, fill_plan, is_disk_full,
    parse_bytes_written, working_root,
)


class Releases:
    def __init__(self):
        self.count = 0

    def __call__(self, path):
        self.count += 1


def volume(path, releases=None):
    return ResolvedVolume(path=str(path), display_name=os.path.basename(str(path)),
                          access_granted=releases is not None, _stop=releases)


def test_parse_takes_latest_figure():
    out = '1048576 bytes copied\r2097152 bytes (2.1 MB) copied, 1 s\r'
    assert parse_bytes_written(out) == 2097152
    assert parse_bytes_written('dd: opening junk') is None
    # BSD dd summary
    assert parse_bytes_written('4194304 bytes transferred in 0.5 secs') == 4194304


def test_disk_full_detection():
    assert is_disk_full("dd: error writing 'junk': No space left on device")
    assert not is_disk_full('dd: failed to open: Permission denied')


def test_fill_plan():
    assert fill_plan(None, 32) == (32, None)
    assert fill_plan(2048, 32) == (32, 64)
    assert fill_plan(None, 32, test_mode=True) == (32, 1)
    # below one chunk the budget is written in 1 MB blocks
    assert fill_plan(1, 32) == (1, 1)
    assert fill_plan(20, 32) == (1, 20)


def test_args_zero_fill_unbounded(make_settings):
    args = build_dd_args(make_settings('/bin/dd', direct_io=True), '/v/PurgePointFill/junk', False)
    assert args == ['/bin/dd', 'if=/dev/zero', 'of=/v/PurgePointFill/junk', f'bs={32 * 1024 * 1024}',
                    'status=progress', 'oflag=direct']


def test_args_secure_with_count(make_settings):
    args = build_dd_args(make_settings(), '/v/junk', True, count=5)
    assert 'if=/dev/urandom' in args
    assert args[-1] == 'count=5'
    assert 'oflag=direct' not in args


def test_working_root_on_data_volume(make_settings, data_volume, tmp_path):
    s = make_settings()
    assert working_root(str(data_volume), s) == os.path.join(str(data_volume), 'Users/Shared')
    assert working_root(str(tmp_path), s) == str(tmp_path)


def test_completed_run_reports_progress(make_settings, make_dd, volume_dir, dd_calls):
    dd = make_dd(DD_OK)
    vol_dir = volume_dir('USB')
    seen, releases = [], Releases()
    task = OverwriteTask(volume(vol_dir, releases), budget_mb=64, on_progress=seen.append,
                         settings=make_settings(dd))
    result = task.run()
    assert result.outcome is Outcome.COMPLETED
    assert result.bytes_written == 67108864
    assert seen == sorted(seen)
    assert seen[-1] == 100.0
    assert dd_calls(dd)[0][-1] == 'count=2'
    assert not os.path.exists(vol_dir / 'PurgePointFill')
    assert releases.count == 1


def test_progress_never_goes_backwards(make_settings, make_dd, volume_dir):
    dd = make_dd(DD_OK.replace('exit 0', "printf '1048576 bytes copied\\n' >&2\nexit 0"))
    seen = []
    OverwriteTask(volume(volume_dir('V')), budget_mb=64, on_progress=seen.append,
                  settings=make_settings(dd)).run()
    assert seen == sorted(seen)


def test_disk_full_is_success(make_settings, make_dd, volume_dir):
    dd = make_dd(DD_FULL)
    vol_dir = volume_dir('Full')
    logged = []
    result = OverwriteTask(volume(vol_dir), on_log=logged.append, settings=make_settings(dd)).run()
    assert result.outcome is Outcome.FILLED
    assert 'No space left on device' in ''.join(logged)
    assert not os.path.exists(vol_dir / 'PurgePointFill')


def test_failure_raises_with_log(make_settings, make_dd, volume_dir):
    dd = make_dd(DD_FAIL)
    vol_dir = volume_dir('Bad')
    releases = Releases()
    with pytest.raises(WriteProcessFailed) as exc:
        OverwriteTask(volume(vol_dir, releases), settings=make_settings(dd)).run()
    assert exc.value.returncode == 1
    assert 'Permission denied' in exc.value.log
    assert not os.path.exists(vol_dir / 'PurgePointFill')
    assert releases.count == 1


def test_spawn_failure(make_settings, volume_dir, tmp_path):
    vol_dir = volume_dir('NoDD')
    with pytest.raises(WriteProcessFailed):
        OverwriteTask(volume(vol_dir), settings=make_settings(str(tmp_path / 'missing-dd'))).run()
    assert not os.path.exists(vol_dir / 'PurgePointFill')


def test_directory_create_failure(make_settings, make_dd, volume_dir, dd_calls):
    dd = make_dd(DD_OK)
    vol_dir = volume_dir('Blocked')
    (vol_dir / 'PurgePointFill').write_text('in the way')
    releases = Releases()
    with pytest.raises(DirectoryCreateFailed):
        OverwriteTask(volume(vol_dir, releases), settings=make_settings(dd)).run()
    assert dd_calls(dd) == []
    assert releases.count == 1


def test_terminate_stops_process(make_settings, make_dd, volume_dir, dd_calls, wait_for):
    dd = make_dd(DD_SLOW)
    vol_dir = volume_dir('Slow')
    task = OverwriteTask(volume(vol_dir), settings=make_settings(dd))
    results = []
    t = threading.Thread(target=lambda: results.append(task.run()))
    t.start()
    assert wait_for(lambda: dd_calls(dd))
    task.terminate()
    t.join(10)
    assert not t.is_alive()
    assert results[0].outcome is Outcome.CANCELLED
    assert not os.path.exists(vol_dir / 'PurgePointFill')


def test_terminate_before_start_skips_spawn(make_settings, make_dd, volume_dir, dd_calls):
    dd = make_dd(DD_OK)
    task = OverwriteTask(volume(volume_dir('Early')), settings=make_settings(dd))
    task.terminate()
    assert task.run().outcome is Outcome.CANCELLED
    assert dd_calls(dd) == []


def test_tiny_budget_stays_within_budget(make_settings, make_dd, volume_dir, dd_calls):
    dd = make_dd(DD_OK)
    OverwriteTask(volume(volume_dir('Tiny')), budget_mb=1, settings=make_settings(dd)).run()
    args = dd_calls(dd)[0]
    assert f'bs={1024 * 1024}' in args
    assert args[-1] == 'count=1'


class ExitedProcess:
    """dd handle that has already exited cleanly when wait() is called."""

    def __init__(self, on_wait):
        self.stdout = io.BytesIO(b'67108864 bytes (67 MB, 64 MiB) copied\n')
        self.on_wait = on_wait
        self.terminated = False

    def wait(self):
        self.on_wait()
        return 0

    def terminate(self):
        self.terminated = True


def test_terminate_after_clean_exit_is_completed(make_settings, volume_dir):
    handles = []
    box = {}

    def spawn(argv):
        handles.append(ExitedProcess(lambda: box['task'].terminate()))
        return handles[0]

    box['task'] = OverwriteTask(volume(volume_dir('Late')), budget_mb=64, settings=make_settings(), spawn=spawn)
    result = box['task'].run()
    assert handles[0].terminated
    assert result.outcome is Outcome.COMPLETED


def test_cleanup_failures_are_logged(make_settings, make_dd, volume_dir, monkeypatch):
    from purgepoint import runner

    def refuse(path, *a, **k):
        raise PermissionError(13, 'Operation not permitted', path)

    monkeypatch.setattr(runner.os, 'remove', refuse)
    monkeypatch.setattr(runner.shutil, 'rmtree', refuse)
    logged = []
    result = OverwriteTask(volume(volume_dir('Stuck')), on_log=logged.append,
                           settings=make_settings(make_dd(DD_OK))).run()
    assert result.outcome is Outcome.COMPLETED
    out = ''.join(logged)
    assert "Couldn't remove fill file" in out
    assert "Couldn't remove folder" in out
