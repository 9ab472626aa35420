"""Requests served by the manager and the responses it sends back."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

from connate.config import LogFile, LogInherit, LogNone, LogService, State, Target
from connate.machine import NextState, ServiceSlot, ServiceTable

_NS_PER_SEC = 1_000_000_000
_RELATIONS = ("needs", "wants", "conflicts", "groups")


class Field(enum.Enum):
    """A per-service value that can be queried."""

    NAME = "name"
    STATUS = "status"
    STATE = "state"
    TARGET = "target"
    PID = "pid"
    EXIT_CODE = "exit-code"
    ATTEMPT_COUNT = "attempt-count"
    TIME = "time"
    LOG = "log"


@dataclass(frozen=True)
class Request:
    """A request from the control tool or a supervisor process."""

    class Kind(enum.Enum):
        QUERY_BY_INDEX = "query-by-index"
        QUERY_BY_NAME = "query-by-name"
        QUERY_RELATION = "query-relation"
        SET_TARGET = "set-target"
        EXEC = "exec"
        QUERY_SETTLE_FD = "query-settle-fd"
        SERVICE_STARTING = "service-starting"
        SERVICE_READY = "service-ready"
        DAEMON_READY = "daemon-ready"
        INVALID = "invalid"

    kind: "Request.Kind"
    query: Optional[Field] = None
    index: Optional[int] = None
    name: Optional[str] = None
    relation: Optional[str] = None
    target: Optional[Target] = None
    pid: Optional[int] = None
    path: str = ""

    @classmethod
    def by_index(cls, query: Field, index: int) -> "Request":
        return cls(cls.Kind.QUERY_BY_INDEX, query=query, index=index)

    @classmethod
    def by_name(cls, query: Field, name: str) -> "Request":
        return cls(cls.Kind.QUERY_BY_NAME, query=query, name=name)

    @classmethod
    def query_relation(cls, relation: str, index: int, name: str) -> "Request":
        if relation not in _RELATIONS:
            raise ValueError(f"unknown relation {relation!r}")
        return cls(cls.Kind.QUERY_RELATION, relation=relation, index=index, name=name)

    @classmethod
    def set_target(cls, name: str, target: Target) -> "Request":
        return cls(cls.Kind.SET_TARGET, name=name, target=target)

    @classmethod
    def reexec(cls, path: str = "") -> "Request":
        """Ask the manager to re-execute; an empty path means its own executable."""
        return cls(cls.Kind.EXEC, path=path)

    @classmethod
    def settle_fd(cls, name: str) -> "Request":
        return cls(cls.Kind.QUERY_SETTLE_FD, name=name)

    @classmethod
    def service_starting(cls, pid: int, name: str) -> "Request":
        return cls(cls.Kind.SERVICE_STARTING, pid=pid, name=name)

    @classmethod
    def service_ready(cls, pid: int) -> "Request":
        return cls(cls.Kind.SERVICE_READY, pid=pid)

    @classmethod
    def daemon_ready(cls, pid: int, name: str) -> "Request":
        return cls(cls.Kind.DAEMON_READY, pid=pid, name=name)

    @classmethod
    def invalid(cls) -> "Request":
        return cls(cls.Kind.INVALID)


class ResponseKind(enum.Enum):
    OKAY = "okay"
    FAILED = "failed"
    INVALID_REQUEST = "invalid-request"
    SERVICE_NOT_FOUND = "not-found"
    FIELD_IS_NONE = "none"
    SETTLE_DISABLED = "settle-disabled"
    STATUS = "status"
    NAME = "name"
    STATE = "state"
    TARGET = "target"
    PID = "pid"
    EXIT_CODE = "exit-code"
    ATTEMPT_COUNT = "attempt-count"
    TIME = "time"
    LOG = "log"
    SETTLE_FD = "settle-fd"


_FAILURES = frozenset(
    {
        ResponseKind.FAILED,
        ResponseKind.INVALID_REQUEST,
        ResponseKind.SERVICE_NOT_FOUND,
        ResponseKind.SETTLE_DISABLED,
    }
)

_BARE = frozenset(
    {
        ResponseKind.OKAY,
        ResponseKind.FAILED,
        ResponseKind.INVALID_REQUEST,
        ResponseKind.SERVICE_NOT_FOUND,
        ResponseKind.FIELD_IS_NONE,
        ResponseKind.SETTLE_DISABLED,
    }
)


def _format_optional(value: Optional[int]) -> str:
    return "-" if value is None else str(value)


def _format_log(log: Any) -> str:
    if isinstance(log, LogNone):
        return "none"
    if isinstance(log, LogInherit):
        return "inherit"
    if isinstance(log, LogFile):
        return f"file {log.path}"
    if isinstance(log, LogService):
        return f"service {log.name}"
    return str(log)


@dataclass(frozen=True)
class Response:
    """A reply to a request; `value` carries the payload, if any."""

    kind: ResponseKind
    value: Any = None

    @property
    def failed(self) -> bool:
        """True when the response reports an error."""
        return self.kind in _FAILURES

    def __str__(self) -> str:
        kind = self.kind
        if kind in _BARE:
            return kind.value
        if kind is ResponseKind.STATUS:
            state, target, pid, exit_code, seconds = self.value
            return " ".join(
                (
                    state.value,
                    target.value,
                    _format_optional(pid),
                    _format_optional(exit_code),
                    str(seconds),
                )
            )
        if kind in (ResponseKind.STATE, ResponseKind.TARGET):
            return self.value.value
        if kind is ResponseKind.LOG:
            return _format_log(self.value)
        return str(self.value)


_NOT_FOUND = Response(ResponseKind.SERVICE_NOT_FOUND)
_OKAY = Response(ResponseKind.OKAY)
_INVALID = Response(ResponseKind.INVALID_REQUEST)
_FAILED = Response(ResponseKind.FAILED)
_NONE = Response(ResponseKind.FIELD_IS_NONE)


def _slot_at(table: ServiceTable, index: Optional[int]) -> Optional[ServiceSlot]:
    if index is None or not 0 <= index < len(table):
        return None
    return table[index]


def _seconds_in_state(slot: ServiceSlot, now: int) -> int:
    return max(0, now // _NS_PER_SEC - slot.time // _NS_PER_SEC)


def _query(slot: ServiceSlot, query: Optional[Field], now: int) -> Response:
    if query is Field.NAME:
        return Response(ResponseKind.NAME, slot.name)
    if query is Field.STATUS:
        return Response(
            ResponseKind.STATUS,
            (slot.state, slot.target, slot.pid, slot.exit_code, _seconds_in_state(slot, now)),
        )
    if query is Field.STATE:
        return Response(ResponseKind.STATE, slot.state)
    if query is Field.TARGET:
        return Response(ResponseKind.TARGET, slot.target)
    if query is Field.PID:
        return _NONE if slot.pid is None else Response(ResponseKind.PID, slot.pid)
    if query is Field.EXIT_CODE:
        if slot.exit_code is None:
            return _NONE
        return Response(ResponseKind.EXIT_CODE, slot.exit_code)
    if query is Field.ATTEMPT_COUNT:
        return Response(ResponseKind.ATTEMPT_COUNT, slot.attempt_count)
    if query is Field.TIME:
        return Response(ResponseKind.TIME, _seconds_in_state(slot, now))
    if query is Field.LOG:
        return Response(ResponseKind.LOG, slot.service.log)
    return _INVALID


def _settle_fd(slot: ServiceSlot) -> Response:
    if slot.settle_pipe is None:
        try:
            slot.settle_pipe = os.pipe2(os.O_NONBLOCK)
        except OSError:
            return _FAILED
    return Response(ResponseKind.SETTLE_FD, slot.settle_pipe[0])


def handle_request(
    table: ServiceTable,
    request: Request,
    now: int,
    exec_hook: Optional[Callable[[str], None]] = None,
) -> Response:
    """Serve one request against the service table and return the response."""
    kind = request.kind
    K = Request.Kind

    if kind is K.EXEC:
        # A successful re-exec never returns; any return means it failed.
        if exec_hook is not None:
            try:
                exec_hook(request.path)
            except OSError:
                pass
        return _FAILED

    if kind is K.QUERY_BY_INDEX:
        slot = _slot_at(table, request.index)
        return _NOT_FOUND if slot is None else _query(slot, request.query, now)

    if kind is K.INVALID:
        return _INVALID

    if kind is K.SERVICE_READY:
        if request.pid is None:
            return _INVALID
        slot = table.find_by_direct_or_supervisor_pid(request.pid)
        if slot is None:
            return _NOT_FOUND
        slot.ready = True
        slot.dirty = True
        return _OKAY

    slot = table.find_by_name(request.name) if request.name is not None else None

    if kind is K.QUERY_BY_NAME:
        if request.query is Field.NAME:
            return _INVALID
        return _NOT_FOUND if slot is None else _query(slot, request.query, now)

    if slot is None:
        return _NOT_FOUND

    if kind is K.QUERY_RELATION:
        indices = getattr(slot, request.relation or "", None)
        if indices is None:
            return _INVALID
        position = request.index
        if position is None or not 0 <= position < len(indices):
            return _NONE
        dep = _slot_at(table, indices[position])
        return _NONE if dep is None else Response(ResponseKind.NAME, dep.name)

    if kind is K.SET_TARGET:
        if request.target is None:
            return _INVALID
        return set_target(table, slot.index, now, request.target)

    if kind is K.QUERY_SETTLE_FD:
        return _settle_fd(slot)

    if kind in (K.SERVICE_STARTING, K.DAEMON_READY):
        if request.pid is None or request.pid < 2:
            return _INVALID
        slot.pid = request.pid
        if kind is K.DAEMON_READY:
            slot.ready = True
        slot.dirty = True
        return _OKAY

    return _INVALID


def _retarget(table: ServiceTable, indices, target: Target) -> bool:
    for i in indices:
        dep = _slot_at(table, i)
        if dep is None:
            return False
        dep.target = target
        dep.dirty = True
    return True


def set_target(table: ServiceTable, index: int, now: int, target: Target) -> Response:
    """Set a service's target and propagate it so nothing blocks the new target."""
    slot = _slot_at(table, index)
    if slot is None:
        return _NOT_FOUND

    # A failed service does not move on its own; a new target breaks it out.
    if slot.state is State.FAILED:
        table.apply(index, NextState.DOWN, now)

    slot.target = target
    slot.dirty = True

    if target in (Target.UP, Target.ONCE):
        if not _retarget(table, slot.target_up_propagate_up, Target.UP):
            return _NOT_FOUND
        if not _retarget(table, slot.target_up_propagate_down, Target.DOWN):
            return _NOT_FOUND
    elif target is Target.DOWN:
        if not _retarget(table, slot.target_down_propagate_down, Target.DOWN):
            return _NOT_FOUND
    else:
        # Restart: dependents go down now and, where they wanted to be up, come back later.
        for i in slot.target_down_propagate_down:
            dep = _slot_at(table, i)
            if dep is None:
                return _NOT_FOUND
            if dep.target is Target.UP:
                dep.target = Target.RESTART
                dep.dirty = True
            elif dep.target is Target.ONCE:
                dep.target = Target.DOWN
                dep.dirty = True
        for i in slot.target_up_propagate_up:
            dep = _slot_at(table, i)
            if dep is None:
                return _NOT_FOUND
            if dep.target is Target.DOWN:
                dep.target = Target.UP
                dep.dirty = True
        if not _retarget(table, slot.target_up_propagate_down, Target.DOWN):
            return _NOT_FOUND

    # Group members inherit the new target.
    if not _retarget(table, slot.groups, target):
        return _NOT_FOUND

    return _OKAY


__all__ = [
    "Field",
    "Request",
    "ResponseKind",
    "Response",
    "handle_request",
    "set_target",
]