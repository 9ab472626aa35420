"""Command-line parsing and dispatch for the control tool."""

from __future__ import annotations

import fcntl
import os
import struct
import sys
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, TextIO, Tuple

from connate.config import Target
from connate.deps import query_dependencies
from connate.procfs import NotAncestorError, find_connate_child, parse_pid
from connate.queries import CommandError, cmd_list, cmd_set_target, cmd_status, query_field
from connate.requests import Field, Request
from connate.settle import cmd_settle

PID_ENVVAR = "CONNATE_PID"
LOCK_FILE_ENVVAR = "CONNATE_LOCK_FILE"

# struct flock on 64-bit Linux: l_type, l_whence, l_start, l_len, l_pid, padding.
_FLOCK = struct.Struct("hhqqi4x")

_HELP_WORDS = frozenset({"-", "-h", "--help", "help"})
_PID_WORDS = frozenset({"PID", "P"})

_ACTIONS = {
    "exec": "exec",
    "x": "exec",
    "status": "status",
    "s": "status",
    "list": "list",
    "l": "list",
    "state": "state",
    "target": "target",
    "pid": "pid",
    "p": "pid",
    "code": "code",
    "attempt": "attempt",
    "time": "time",
    "needs": "needs",
    "wants": "wants",
    "conflicts": "conflicts",
    "groups": "groups",
    "log": "log",
    "up": "up",
    "u": "up",
    "down": "down",
    "d": "down",
    "restart": "restart",
    "r": "restart",
    "once": "once",
    "o": "once",
    "UP": "settle-up",
    "U": "settle-up",
    "DOWN": "settle-down",
    "D": "settle-down",
    "RESTART": "settle-restart",
    "R": "settle-restart",
    "ONCE": "settle-once",
    "O": "settle-once",
    "ready": "ready",
}

_FIELDS = {
    "state": Field.STATE,
    "target": Field.TARGET,
    "pid": Field.PID,
    "code": Field.EXIT_CODE,
    "attempt": Field.ATTEMPT_COUNT,
    "time": Field.TIME,
    "log": Field.LOG,
}

_SET_TARGETS = {
    "up": Target.UP,
    "down": Target.DOWN,
    "restart": Target.RESTART,
    "once": Target.ONCE,
}

_SETTLE_TARGETS = {f"settle-{name}": target for name, target in _SET_TARGETS.items()}


@dataclass(frozen=True)
class Command:
    """A parsed command line: what to do, its arguments and the manager's PID."""

    action: str
    args: Tuple[str, ...] = ()
    pid: Optional[int] = None
    env: Mapping[str, str] = field(default_factory=dict, compare=False)
    config_lock_file: Optional[str] = None


def pid_from_lock(path: str) -> int:
    """The PID of the process holding a lock on the given file."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError as exc:
        raise CommandError(f"Unable to open {path}: {exc.strerror}") from exc
    try:
        query = _FLOCK.pack(fcntl.F_WRLCK, os.SEEK_SET, 0, 0, 0)
        try:
            reply = fcntl.fcntl(fd, fcntl.F_GETLK, query)
        except OSError as exc:
            raise CommandError(f"Unable to get PID locking {path}: {exc.strerror}") from exc
    finally:
        os.close(fd)
    l_type, _, _, _, pid = _FLOCK.unpack(reply)
    if l_type == fcntl.F_UNLCK or pid <= 0:
        raise CommandError(f"Unable to find PID locking {path}")
    return pid


def _parse_pid_or(text: str, message: str) -> int:
    try:
        return parse_pid(text)
    except ValueError as exc:
        raise CommandError(message) from exc


def _resolve_pid(
    cli_pid: Optional[str],
    lock_path: Optional[str],
    env: Mapping[str, str],
    config_lock_file: Optional[str],
) -> int:
    if cli_pid is not None:
        return _parse_pid_or(cli_pid, "invalid PID argument")
    if lock_path is not None:
        return pid_from_lock(lock_path)
    if PID_ENVVAR in env:
        return _parse_pid_or(env[PID_ENVVAR], "$CONNATE_PID value invalid")
    if LOCK_FILE_ENVVAR in env:
        return pid_from_lock(env[LOCK_FILE_ENVVAR])
    if config_lock_file is not None:
        return pid_from_lock(config_lock_file)
    # No lock file configured: assume the manager is init.
    return 1


def parse_command(
    argv: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    config_lock_file: Optional[str] = None,
) -> Command:
    """Parse ``conctl [PID | LOCK_PATH] COMMAND [ARGS]``; argv includes the program name.

    The manager's PID comes from, in order: a leading numeric argument, a
    leading path argument ('.' or '/'), $CONNATE_PID, $CONNATE_LOCK_FILE,
    the configured lock file, and finally PID 1.
    """
    env = dict(os.environ if env is None else env)
    rest = list(argv[1:])
    if not rest:
        raise CommandError("No cmd specified.  See `--help`")

    first = rest.pop(0)
    cli_pid: Optional[str] = None
    lock_path: Optional[str] = None
    if first[:1].isdigit() and first[:1].isascii():
        cli_pid = first
        word = rest.pop(0) if rest else None
    elif first[:1] in (".", "/"):
        lock_path = first
        word = rest.pop(0) if rest else None
    else:
        word = first
    if word is None:
        raise CommandError("No cmd specified.  See `--help`")

    if word in _HELP_WORDS:
        return Command("help", env=env, config_lock_file=config_lock_file)

    pid = _resolve_pid(cli_pid, lock_path, env, config_lock_file)

    if word in _PID_WORDS:
        return Command("connate-pid", pid=pid)

    action = _ACTIONS.get(word)
    if action is None:
        raise CommandError("Invalid cmd.  See `--help`")
    args = () if action == "list" else tuple(rest)
    return Command(action, args=args, pid=pid)


def _source_line(label: str, value: Optional[str]) -> str:
    if value is None:
        return f"{label} (currently unset)\n"
    return f"{label} ({value})\n"


_HELP_HEAD = """Usage: conctl [PID | CONNATE_LOCK_PATH] COMMAND [ARGS]

conctl finds the connate daemon by checking in order:
- If optional first arg starts with digit, indicates PID
- If optional first arg starts with '.' or '/', indicates lock path
"""

_HELP_BODY = """- Assumes PID=1

For all commands which take `[services]` argument, if no services are specified,
implicitly applies to all services.  For commands which take `<services>`, one
or more services must be specified.

GENERAL QUERY COMMANDs:
s, status  [services]  Prints status information
l, list                List all services
   state   [services]  Print the current state
   target  [services]  Print the target state
p, pid     [services]  Print the Process IDs
   code    [services]  Print the last exit code
   attempt [services]  Print the number of attempts to start and stay up
   time    [services]  Print the time in the current state

DEPENDENCY QUERY COMMANDS:
needs      [services]  Print hard dependencies
wants      [services]  Print soft dependencies
conflicts  [services]  Print anti dependencies
groups     [services]  Print group members
log        [services]  Print log configuration

SET TARGET COMMANDs:
u, up      <services>  Bring up service(s) and dependencies
d, down    <services>  Bring down the service(s) and dependents
r, restart <services>  Restart the service(s)
o, once    <services>  Bring the service(s) up once (no retry)

SET TARGET AND WAIT FOR SETTLE COMMANDS:
U, UP      <services>  Bring up service(s) and dependencies
                       then wait for service state to settle
D, DOWN    <services>  Bring down the service(s) and dependents
                       then wait for service state to settle
R, RESTART <services>  Restart the service(s)
                       then wait for service state to settle
O, ONCE    <services>  Bring the service(s) up once (no retry)
                       then wait for service state to settle

MISCELLANEOUS COMMANDs:
-h, --help, help      Print this help message
P, PID                Print the Connate Process ID
x, exec [path]        Instructs Connate to re-execute itself (usually to
                      change configuration).  Optionally give it a new
                      executable path; otherwise, it re-uses the file path that
                      was previously used to execute it.
ready                 Notify connate that this service is ready. Called from
                      within a service process whose readiness is `Notify` to
                      signal that initialization is complete and dependencies
                      can now be fulfilled.

Output formats are intended to be both human and machine readable, allowing for
feeding one command's output back in as input.  For example:
    conctl needs sshd | xargs conctl status
or
    conctl status $(conctl needs sshd)

Additionally, one can create a process tree for Connate with the aid of pstree:
    pstree $(conctl PID)

or a specific service:
    pstree $(conctl pid sshd)

"""


def help_text(
    env: Optional[Mapping[str, str]] = None, config_lock_file: Optional[str] = None
) -> str:
    """The usage message, showing where the manager would currently be found."""
    env = os.environ if env is None else env
    return (
        _HELP_HEAD
        + _source_line("- $CONNATE_PID", env.get(PID_ENVVAR))
        + _source_line("- $CONNATE_LOCK_FILE", env.get(LOCK_FILE_ENVVAR))
        + _source_line("- Compiled-in config lock file", config_lock_file)
        + _HELP_BODY
    )


def _cmd_exec(client, args: Tuple[str, ...], out: TextIO) -> int:
    # An empty path means the manager's own executable.
    path = args[0] if args else ""
    response = client.send_and_receive(Request.reexec(path))
    if response.failed:
        out.write(f"{response}\n")
        return 1
    out.write(f"Successfully updated with {path or '/proc/self/exe'}\n")
    return 0


def _cmd_ready(client, connate_pid: int, out: TextIO) -> int:
    try:
        child = find_connate_child(connate_pid)
    except (NotAncestorError, OSError, ValueError) as exc:
        raise CommandError(
            "Unable to find connate in process ancestry.  "
            "Is this being called from a service?"
        ) from exc
    response = client.send_and_receive(Request.service_ready(child))
    out.write(f"{response}\n")
    return 1 if response.failed else 0


def run_command(command: Command, client=None, out: Optional[TextIO] = None) -> int:
    """Carry out a parsed command and return its exit code.

    `client` is the connection to the manager, already holding the request
    lock; the help and PID commands do not need one.
    """
    out = sys.stdout if out is None else out
    action = command.action

    if action == "help":
        out.write(help_text(command.env, command.config_lock_file))
        return 0
    if action == "connate-pid":
        out.write(f"{command.pid}\n")
        return 0

    if client is None:
        raise ValueError(f"command {action!r} needs a connection to the manager")

    args = command.args
    if action == "exec":
        return _cmd_exec(client, args, out)
    if action == "status":
        return cmd_status(client, args, out)
    if action == "list":
        return cmd_list(client, out)
    if action in _FIELDS:
        return query_field(client, args, _FIELDS[action], out)
    if action in ("needs", "wants", "conflicts", "groups"):
        return query_dependencies(client, args, action, out)
    if action in _SET_TARGETS:
        return cmd_set_target(client, args, _SET_TARGETS[action], out)
    if action in _SETTLE_TARGETS:
        return cmd_settle(client, args, _SETTLE_TARGETS[action], command.pid, out)
    if action == "ready":
        return _cmd_ready(client, command.pid, out)
    raise CommandError("Invalid cmd.  See `--help`")


__all__ = [
    "PID_ENVVAR",
    "LOCK_FILE_ENVVAR",
    "Command",
    "parse_command",
    "pid_from_lock",
    "help_text",
    "run_command",
]