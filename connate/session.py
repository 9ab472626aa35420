"""Saving service runtime state across a re-exec, and taking the session lock file.

A session is a flat byte stream of service records. Each record opens with
``[``, a little-endian u16 name length and the name, and closes with ``]``.
Between them come one-byte field headers, some followed by a fixed-size
little-endian value. Optional fields are present only when set, integers only
when non-zero, and flags only when true. A field left out takes its default.
"""

from __future__ import annotations

import enum
import errno
import fcntl
import os
import signal
import struct
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Tuple

from connate.config import State, Target
from connate.machine import ServiceSlot, ServiceTable

_NS_PER_SEC = 1_000_000_000
_MAX_NSEC = 999_999_999

_U16 = struct.Struct("<H")
_I32 = struct.Struct("<i")
_U32 = struct.Struct("<I")
_I64 = struct.Struct("<q")
_PIPE = struct.Struct("<ii")

# struct flock on 64-bit Linux: l_type, l_whence, l_start, l_len, l_pid, padding.
_FLOCK = struct.Struct("hhqqi4x")


class SessionError(ValueError):
    """The session stream is malformed or cannot be written."""


class LockHeldError(RuntimeError):
    """Another process holds the session lock file."""

    def __init__(self, path: str, pid: Optional[int]) -> None:
        self.path = path
        self.pid = pid
        holder = f"PID {pid}" if pid is not None else "another process"
        super().__init__(f"Lock file {path} is held by {holder}")


class SessionField(enum.IntEnum):
    """Header bytes of the session format."""

    # Service boundary markers
    SERVICE_START = ord("[")
    SERVICE_END = ord("]")

    # State variants
    STATE_DOWN = ord("d")
    STATE_WAITING_TO_START = ord("w")
    STATE_SETTING_UP = ord("s")
    STATE_STARTING = ord("S")
    STATE_UP = ord("u")
    STATE_WAITING_TO_STOP = ord("W")
    STATE_STOPPING = ord("g")
    STATE_CLEANING_UP = ord("c")
    STATE_RETRYING = ord("r")
    STATE_FAILED = ord("f")
    STATE_FORCE_DOWN = ord("F")
    STATE_CANNOT_STOP = ord("C")

    # Target variants
    TARGET_DOWN = ord("D")
    TARGET_UP = ord("U")
    TARGET_RESTART = ord("R")
    TARGET_ONCE = ord("O")

    # Optional fields: presence means set.
    PID = ord("p")
    SUPERVISOR_PID = ord("P")
    STDIN_PIPE = ord("i")
    RETURN_VALUE = ord("v")
    SETTLE_PIPE = ord("q")

    # Integer fields: absence means zero.
    ATTEMPT_COUNT = ord("a")
    TIME_SEC = ord("t")
    TIME_NSEC = ord("n")

    # Flags: presence means true.
    READY = ord("y")


_F = SessionField

_STATE_FIELDS = {
    State.DOWN: _F.STATE_DOWN,
    State.WAITING_TO_START: _F.STATE_WAITING_TO_START,
    State.SETTING_UP: _F.STATE_SETTING_UP,
    State.STARTING: _F.STATE_STARTING,
    State.UP: _F.STATE_UP,
    State.WAITING_TO_STOP: _F.STATE_WAITING_TO_STOP,
    State.STOPPING: _F.STATE_STOPPING,
    State.CLEANING_UP: _F.STATE_CLEANING_UP,
    State.RETRYING: _F.STATE_RETRYING,
    State.FAILED: _F.STATE_FAILED,
    State.FORCE_DOWN: _F.STATE_FORCE_DOWN,
    State.CANNOT_STOP: _F.STATE_CANNOT_STOP,
}
_FIELD_STATES = {field: state for state, field in _STATE_FIELDS.items()}

_TARGET_FIELDS = {
    Target.DOWN: _F.TARGET_DOWN,
    Target.UP: _F.TARGET_UP,
    Target.RESTART: _F.TARGET_RESTART,
    Target.ONCE: _F.TARGET_ONCE,
}
_FIELD_TARGETS = {field: target for target, field in _TARGET_FIELDS.items()}

Pipe = Tuple[int, int]


def _close_pipe(pipe: Optional[Pipe]) -> None:
    if pipe is None:
        return
    for fd in pipe:
        try:
            os.close(fd)
        except OSError:
            pass


def _encode(slot: ServiceSlot) -> bytes:
    name = slot.name.encode("utf-8")
    if len(name) > 0xFFFF:
        raise SessionError(f"service name too long to save: {slot.name!r}")

    out = bytearray([_F.SERVICE_START])
    out += _U16.pack(len(name))
    out += name
    out.append(_STATE_FIELDS[slot.state])
    out.append(_TARGET_FIELDS[slot.target])

    if slot.pid is not None:
        out.append(_F.PID)
        out += _I32.pack(slot.pid)
    if slot.supervisor_pid is not None:
        out.append(_F.SUPERVISOR_PID)
        out += _I32.pack(slot.supervisor_pid)
    if slot.stdin_pipe is not None:
        out.append(_F.STDIN_PIPE)
        out += _PIPE.pack(*slot.stdin_pipe)
    if slot.exit_code is not None:
        out.append(_F.RETURN_VALUE)
        out += _I32.pack(slot.exit_code)
    if slot.settle_pipe is not None:
        out.append(_F.SETTLE_PIPE)
        out += _PIPE.pack(*slot.settle_pipe)

    if slot.attempt_count != 0:
        out.append(_F.ATTEMPT_COUNT)
        out += _U32.pack(slot.attempt_count)
    seconds, nanos = divmod(slot.time, _NS_PER_SEC)
    if seconds != 0:
        out.append(_F.TIME_SEC)
        out += _I64.pack(seconds)
    if nanos != 0:
        out.append(_F.TIME_NSEC)
        out += _I64.pack(nanos)

    if slot.ready:
        out.append(_F.READY)

    out.append(_F.SERVICE_END)
    return bytes(out)


def save_session(table: ServiceTable, stream: BinaryIO) -> None:
    """Replace the stream's contents with the runtime state of every service."""
    stream.seek(0)
    stream.truncate(0)
    for slot in table:
        stream.write(_encode(slot))
    stream.flush()


@dataclass
class _Record:
    """Field values of the record being read, at their defaults until seen."""

    slot: Optional[ServiceSlot] = None
    state: State = State.DOWN
    target: Target = Target.DOWN
    pid: Optional[int] = None
    supervisor_pid: Optional[int] = None
    stdin_pipe: Optional[Pipe] = None
    exit_code: Optional[int] = None
    attempt_count: int = 0
    time_sec: int = 0
    time_nsec: int = 0
    ready: bool = False
    settle_pipe: Optional[Pipe] = None


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise SessionError("session data ends in the middle of a field")
    return data


def _read(stream: BinaryIO, layout: struct.Struct):
    return layout.unpack(_read_exact(stream, layout.size))


def _positive(pid: int) -> Optional[int]:
    return pid if pid > 0 else None


def _finish(record: _Record, kill: Callable[[int, int], None]) -> None:
    slot = record.slot
    if slot is None:
        # The service is no longer configured: stop its processes, release its pipes.
        for pid in (record.pid, record.supervisor_pid):
            if pid is not None:
                try:
                    kill(pid, signal.SIGTERM)
                except OSError:
                    pass
        _close_pipe(record.stdin_pipe)
        _close_pipe(record.settle_pipe)
        return

    slot.state = record.state
    slot.target = record.target
    slot.pid = record.pid
    slot.supervisor_pid = record.supervisor_pid
    if slot.is_logger:
        slot.stdin_pipe = record.stdin_pipe
    else:
        slot.stdin_pipe = None
        _close_pipe(record.stdin_pipe)
    slot.exit_code = record.exit_code
    slot.attempt_count = record.attempt_count
    slot.time = record.time_sec * _NS_PER_SEC + record.time_nsec
    slot.ready = record.ready
    slot.settle_pipe = record.settle_pipe


def load_session(
    table: ServiceTable,
    stream: BinaryIO,
    kill: Optional[Callable[[int, int], None]] = None,
) -> None:
    """Restore runtime state saved by save_session into the matching services.

    Records of services no longer configured have their processes sent SIGTERM
    through `kill` (by default the table's spawner) and their pipes closed.
    Unknown header bytes are skipped. Truncated data raises SessionError.
    """
    if kill is None:
        kill = table.spawner.kill

    stream.seek(0)
    record = _Record()

    while True:
        header = stream.read(1)
        if not header:
            break
        try:
            field = SessionField(header[0])
        except ValueError:
            # Written by a newer version; skipping may still recover the rest.
            continue

        if field is _F.SERVICE_START:
            (length,) = _read(stream, _U16)
            name = _read_exact(stream, length).decode("utf-8", errors="replace")
            record = _Record(slot=table.find_by_name(name))
        elif field is _F.SERVICE_END:
            _finish(record, kill)
        elif field in _FIELD_STATES:
            record.state = _FIELD_STATES[field]
        elif field in _FIELD_TARGETS:
            record.target = _FIELD_TARGETS[field]
        elif field is _F.PID:
            record.pid = _positive(_read(stream, _I32)[0])
        elif field is _F.SUPERVISOR_PID:
            record.supervisor_pid = _positive(_read(stream, _I32)[0])
        elif field is _F.STDIN_PIPE:
            record.stdin_pipe = _read(stream, _PIPE)
        elif field is _F.RETURN_VALUE:
            record.exit_code = _read(stream, _I32)[0]
        elif field is _F.SETTLE_PIPE:
            record.settle_pipe = _read(stream, _PIPE)
        elif field is _F.ATTEMPT_COUNT:
            record.attempt_count = _read(stream, _U32)[0]
        elif field is _F.TIME_SEC:
            record.time_sec = _read(stream, _I64)[0]
        elif field is _F.TIME_NSEC:
            nanos = _read(stream, _I64)[0]
            record.time_nsec = nanos if 0 <= nanos <= _MAX_NSEC else 0
        elif field is _F.READY:
            record.ready = True


def _locking_pid(fd: int) -> Optional[int]:
    query = _FLOCK.pack(fcntl.F_WRLCK, os.SEEK_SET, 0, 0, 0)
    l_type, _, _, _, pid = _FLOCK.unpack(fcntl.fcntl(fd, fcntl.F_GETLK, query))
    if l_type == fcntl.F_UNLCK or pid <= 0:
        return None
    return pid


def acquire_lock_file(path: str) -> int:
    """Open and lock the session lock file, returning its descriptor.

    Locking again from the same process succeeds. If another process holds
    the lock, LockHeldError names it when it can be found.
    """
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        try:
            if exc.errno not in (errno.EACCES, errno.EAGAIN):
                raise
            raise LockHeldError(path, _locking_pid(fd)) from exc
        finally:
            os.close(fd)
    return fd


__all__ = [
    "SessionError",
    "LockHeldError",
    "SessionField",
    "save_session",
    "load_session",
    "acquire_lock_file",
]