import io
import os
import signal
import stat
import struct

import pytest

from connate.config import Config, LogService, Service, State, Target
from connate.machine import ServiceTable
from connate.session import (
    SessionError,
    SessionField,
    acquire_lock_file,
    load_session,
    save_session,
)


def _table(*names, now=0, **extra):
    services = [Service(name=n, init_target=Target.DOWN) for n in names]
    services += list(extra.get("services", ()))
    return ServiceTable(Config(services=tuple(services)), now)


def _saved(table):
    stream = io.BytesIO()
    save_session(table, stream)
    return stream.getvalue()


def _fd_closed(fd):
    try:
        os.fstat(fd)
    except OSError:
        return True
    return False


def test_minimal_record_wire_bytes():
    table = _table("a")
    assert _saved(table) == b"[\x01\x00adD]"


def test_optional_fields_written_after_state_and_target():
    table = _table("a")
    table[0].state = State.UP
    table[0].target = Target.UP
    table[0].pid = 1234
    assert _saved(table) == b"[\x01\x00auUp" + struct.pack("<i", 1234) + b"]"


def test_round_trip_restores_runtime_state():
    source = _table("a", "b")
    a = source[0]
    a.state = State.RETRYING
    a.target = Target.RESTART
    a.pid = 4321
    a.supervisor_pid = 4320
    a.exit_code = -3
    a.attempt_count = 7
    a.time = 5_500_000_000
    a.ready = True
    source[1].state = State.FAILED
    source[1].target = Target.ONCE

    data = _saved(source)
    dest = _table("a", "b")
    load_session(dest, io.BytesIO(data), kill=lambda pid, sig: None)

    for got, want in zip(dest, source):
        assert (
            got.state,
            got.target,
            got.pid,
            got.supervisor_pid,
            got.exit_code,
            got.attempt_count,
            got.time,
            got.ready,
        ) == (
            want.state,
            want.target,
            want.pid,
            want.supervisor_pid,
            want.exit_code,
            want.attempt_count,
            want.time,
            want.ready,
        )


def test_save_replaces_previous_contents():
    table = _table("a")
    stream = io.BytesIO(b"x" * 100)
    save_session(table, stream)
    assert stream.getvalue() == _saved(table)


def test_missing_fields_take_defaults():
    dest = _table("a")
    dest[0].pid = 99
    dest[0].attempt_count = 3
    dest[0].ready = True
    load_session(dest, io.BytesIO(b"[\x01\x00auU]"), kill=lambda pid, sig: None)
    assert dest[0].state is State.UP
    assert dest[0].target is Target.UP
    assert dest[0].pid is None
    assert dest[0].attempt_count == 0
    assert dest[0].ready is False


def test_unknown_service_processes_are_terminated():
    source = _table("gone", "kept")
    source[0].pid = 1234
    source[0].supervisor_pid = 99
    source[1].state = State.UP
    data = _saved(source)

    killed = []
    dest = _table("kept")
    load_session(dest, io.BytesIO(data), kill=lambda pid, sig: killed.append((pid, sig)))
    assert killed == [(1234, signal.SIGTERM), (99, signal.SIGTERM)]
    assert dest[0].state is State.UP


def test_non_positive_pids_become_none():
    data = (
        b"[\x01\x00a"
        + bytes([SessionField.PID])
        + struct.pack("<i", 0)
        + bytes([SessionField.SUPERVISOR_PID])
        + struct.pack("<i", -5)
        + b"]"
    )
    dest = _table("a")
    dest[0].pid = 10
    load_session(dest, io.BytesIO(data), kill=lambda pid, sig: None)
    assert dest[0].pid is None
    assert dest[0].supervisor_pid is None


def test_out_of_range_nanoseconds_reset_to_zero():
    data = (
        b"[\x01\x00a"
        + bytes([SessionField.TIME_SEC])
        + struct.pack("<q", 2)
        + bytes([SessionField.TIME_NSEC])
        + struct.pack("<q", 2_000_000_000)
        + b"]"
    )
    dest = _table("a")
    load_session(dest, io.BytesIO(data), kill=lambda pid, sig: None)
    assert dest[0].time == 2 * 1_000_000_000


def test_stdin_pipe_of_non_logger_is_closed():
    read_fd, write_fd = os.pipe()
    source = _table("a")
    source[0].stdin_pipe = (read_fd, write_fd)
    data = _saved(source)

    dest = _table("a")
    load_session(dest, io.BytesIO(data), kill=lambda pid, sig: None)
    assert dest[0].stdin_pipe is None
    assert _fd_closed(read_fd) and _fd_closed(write_fd)


def test_stdin_pipe_of_logger_is_kept():
    read_fd, write_fd = os.pipe()
    services = (Service(name="logger"), Service(name="app", log=LogService("logger")))
    source = ServiceTable(Config(services=services), 0)
    source[0].stdin_pipe = (read_fd, write_fd)
    data = _saved(source)

    dest = ServiceTable(Config(services=services), 0)
    try:
        load_session(dest, io.BytesIO(data), kill=lambda pid, sig: None)
        assert dest[0].stdin_pipe == (read_fd, write_fd)
        assert not _fd_closed(read_fd)
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_settle_pipe_round_trips():
    read_fd, write_fd = os.pipe()
    source = _table("a")
    source[0].settle_pipe = (read_fd, write_fd)
    dest = _table("a")
    try:
        load_session(dest, io.BytesIO(_saved(source)), kill=lambda pid, sig: None)
        assert dest[0].settle_pipe == (read_fd, write_fd)
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_acquire_lock_file_creates_private_file(tmp_path):
    path = tmp_path / "connate.lock"
    fd = acquire_lock_file(str(path))
    try:
        assert stat.S_IMODE(path.stat().st_mode) & 0o077 == 0
        # The same process may take the lock again.
        again = acquire_lock_file(str(path))
        os.close(again)
    finally:
        os.close(fd)
    assert path.exists()


def test_acquire_lock_file_on_directory_raises(tmp_path):
    with pytest.raises(OSError):
        acquire_lock_file(str(tmp_path))