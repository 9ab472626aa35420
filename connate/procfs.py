"""Reading process ancestry from /proc."""

from __future__ import annotations

import os
from typing import Optional, Union

_PID_MAX = 2**31 - 1
_DIGITS = b"0123456789"


class NotAncestorError(LookupError):
    """The manager was not found among the ancestors of a process."""


def parse_pid(text: Union[str, bytes]) -> int:
    """Parse a process ID made only of ASCII digits.

    Raises ValueError for empty input, anything but ASCII digits, or a value
    beyond the largest process ID.
    """
    data = text.encode("ascii", errors="replace") if isinstance(text, str) else bytes(text)
    if not data or any(byte not in _DIGITS for byte in data):
        raise ValueError(f"invalid PID: {text!r}")
    value = int(data)
    if value > _PID_MAX:
        raise ValueError(f"PID out of range: {text!r}")
    return value


def parse_stat_ppid(data: bytes) -> int:
    """Extract the parent PID from the contents of /proc/<pid>/stat.

    The format is ``pid (comm) state ppid ...``. The command name may hold
    almost anything, including ``)`` and spaces, but it is closed by the last
    ``)`` in the data, so the parent PID is read from after that.
    """
    end_of_comm = data.rfind(b")")
    if end_of_comm < 0:
        raise ValueError("stat data has no command name")
    rest = data[end_of_comm + 2:]

    end_of_state = rest.find(b" ")
    if end_of_state < 0:
        raise ValueError("stat data has no state field")
    rest = rest[end_of_state + 1:]

    end_of_ppid = rest.find(b" ")
    if end_of_ppid < 0:
        raise ValueError("stat data has no parent PID field")
    return parse_pid(rest[:end_of_ppid])


def read_proc_stat_ppid(pid: int) -> int:
    """The parent PID of a process, as the kernel reports it."""
    with open(f"/proc/{pid}/stat", "rb") as stat:
        return parse_stat_ppid(stat.read())


def find_connate_child(connate_pid: int, start_pid: Optional[int] = None) -> int:
    """Walk up the process tree to the ancestor whose parent is the manager.

    The walk starts at `start_pid`, by default the parent of this process.
    Raises NotAncestorError if init or the kernel is reached first.
    """
    current = os.getppid() if start_pid is None else start_pid
    while True:
        ppid = read_proc_stat_ppid(current)
        if ppid == connate_pid:
            return current
        if ppid in (0, 1):
            raise NotAncestorError(
                "Unable to find connate in process ancestry. "
                "Is this being called from a service?"
            )
        current = ppid


__all__ = [
    "NotAncestorError",
    "parse_pid",
    "parse_stat_ppid",
    "read_proc_stat_ppid",
    "find_connate_child",
]