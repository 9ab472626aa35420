"""Service state machine: transition rules, their effects, and child-exit bookkeeping.

Times are monotonic clock readings in nanoseconds.
"""

from __future__ import annotations

import contextlib
import enum
import errno
import os
import signal
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from connate.config import (
    Call,
    Config,
    FileMode,
    LogFile,
    LogNone,
    LogService,
    Ready,
    RetryAfterDoublingDelay,
    RetryAfterFixed,
    Run,
    Service,
    State,
    Target,
)

# How long a retried service must stay up before its attempt count is reset.
UP_TIME_MILLIS = 10_000
# How long to wait for a SIGKILLed process before giving up on it.
FORCED_DOWN_TIME_MILLIS = 5_000

_NS_PER_MS = 1_000_000
_I64_MAX = 2**63 - 1
_U32_MAX = 2**32 - 1
_PIPE_BUF = 4096


def _millis(delta: Optional[timedelta]) -> Optional[int]:
    if delta is None:
        return None
    return delta // timedelta(milliseconds=1)


class NextState(enum.Enum):
    """The transition a service should make next."""

    DOWN = "down"
    WAITING_TO_START = "waiting-to-start"
    SETTING_UP = "setting-up"
    STARTING = "starting"
    UP = "up"
    WAITING_TO_STOP = "waiting-to-stop"
    STOPPING = "stopping"
    CLEANING_UP = "cleaning-up"
    FORCE_DOWN = "force-down"
    FAILED_OR_RETRY = "failed-or-retry"
    CANNOT_STOP = "cannot-stop"
    # Keep the current state.
    NONE = "none"
    # Keep the current state; the service has been up long enough to be stable.
    UP_STABLE = "up-stable"


@dataclass(eq=False)
class ServiceSlot:
    """A configured service together with its resolved relations and runtime state."""

    index: int
    service: Service
    # Resolved relations, as indices into the service table.
    needs: Tuple[int, ...] = ()
    wants: Tuple[int, ...] = ()
    conflicts: Tuple[int, ...] = ()
    groups: Tuple[int, ...] = ()
    stop_dependencies: Tuple[int, ...] = ()
    propagate_dirty: Tuple[int, ...] = ()
    target_up_propagate_up: Tuple[int, ...] = ()
    target_up_propagate_down: Tuple[int, ...] = ()
    target_down_propagate_down: Tuple[int, ...] = ()
    is_logger: bool = False
    logger: Optional[int] = None
    # Runtime state.
    state: State = State.DOWN
    target: Target = Target.DOWN
    pid: Optional[int] = None
    supervisor_pid: Optional[int] = None
    exit_code: Optional[int] = None
    attempt_count: int = 0
    time: int = 0
    ready: bool = False
    dirty: bool = True
    stdin_pipe: Optional[Tuple[int, int]] = None
    settle_pipe: Optional[Tuple[int, int]] = None

    @property
    def name(self) -> str:
        return self.service.name

    @property
    def max_attempt_count(self) -> Optional[int]:
        """Attempts allowed before failing for good; None means unlimited."""
        retry = self.service.retry
        if isinstance(retry, (RetryAfterFixed, RetryAfterDoublingDelay)):
            return retry.max_attempt_count
        return 1

    @property
    def max_setup_time_millis(self) -> Optional[int]:
        return _millis(self.service.max_setup_time)

    @property
    def max_ready_time_millis(self) -> Optional[int]:
        return _millis(self.service.max_ready_time)

    @property
    def max_stop_time_millis(self) -> Optional[int]:
        return _millis(self.service.max_stop_time)

    @property
    def max_cleanup_time_millis(self) -> Optional[int]:
        return _millis(self.service.max_cleanup_time)

    def has_pid(self) -> bool:
        """True if a service process or its supervisor is known to be running."""
        return self.pid is not None or self.supervisor_pid is not None

    def retry_delay_millis(self) -> int:
        """How long to wait in Retrying before the next attempt."""
        retry = self.service.retry
        if isinstance(retry, RetryAfterFixed):
            return _millis(retry.after)
        if isinstance(retry, RetryAfterDoublingDelay):
            shift = min(max(self.attempt_count - 1, 0), 63)
            return min(_millis(retry.initial_delay) << shift, _I64_MAX)
        return 0

    def millis_since_change(self, now: int) -> int:
        """Milliseconds elapsed since the last state change."""
        return (now - self.time) // _NS_PER_MS


class Spawner:
    """Carries out service phases.

    Call phases run to completion in the manager's own process, with output
    sent where the service's log setting says; their exit code is recorded on
    the slot and no pid is left behind. Launching external programs for Exec
    and Shell phases is left to subclasses; this class refuses them with ENOEXEC.
    """

    def spawn_setting_up(self, slot: ServiceSlot) -> None:
        self._spawn(slot, slot.service.setup)

    def spawn_run(self, slot: ServiceSlot) -> None:
        self._spawn(slot, slot.service.run)

    def spawn_cleaning_up(self, slot: ServiceSlot) -> None:
        self._spawn(slot, slot.service.cleanup)

    def kill(self, pid: int, sig: int) -> None:
        os.kill(pid, sig)

    def _spawn(self, slot: ServiceSlot, phase: Run) -> None:
        if phase is None:
            return
        if not isinstance(phase, Call):
            raise OSError(
                errno.ENOEXEC,
                f"cannot launch {type(phase).__name__} phase of {slot.name}",
            )
        with contextlib.ExitStack() as stack:
            stream = self._log_stream(slot, stack)
            if stream is not None:
                stack.enter_context(contextlib.redirect_stdout(stream))
                stack.enter_context(contextlib.redirect_stderr(stream))
            try:
                phase.func()
                code = 0
            except OSError as exc:
                code = (exc.errno or 1) & 0xFF or 1
            except Exception:
                code = 1
        slot.pid = None
        slot.exit_code = code
        slot.dirty = True

    @staticmethod
    def _log_stream(slot: ServiceSlot, stack: contextlib.ExitStack):
        log = slot.service.log
        if isinstance(log, LogNone):
            return stack.enter_context(open(os.devnull, "w"))
        if isinstance(log, LogFile):
            flags = os.O_WRONLY | os.O_CREAT
            flags |= os.O_TRUNC if log.mode is FileMode.OVERWRITE else os.O_APPEND
            fd = os.open(log.path, flags, log.permissions.mode())
            return stack.enter_context(os.fdopen(fd, "w"))
        if isinstance(log, LogService) and slot.stdin_pipe is not None:
            return stack.enter_context(os.fdopen(slot.stdin_pipe[1], "w", closefd=False))
        return None


def _closure(start: int, edges: Sequence[Sequence[int]]) -> Tuple[int, ...]:
    seen = {start}
    queue = deque(edges[start])
    while queue:
        node = queue.popleft()
        if node in seen:
            continue
        seen.add(node)
        queue.extend(edges[node])
    seen.discard(start)
    return tuple(sorted(seen))


def _build_slots(services: Sequence[Service], now: int) -> List[ServiceSlot]:
    index: Dict[str, int] = {}
    for i, svc in enumerate(services):
        if svc.name in index:
            raise ValueError(f"duplicate service name {svc.name!r}")
        index[svc.name] = i

    def resolve(owner: str, names: Sequence[str], relation: str) -> List[int]:
        resolved = []
        for name in names:
            if name not in index:
                raise ValueError(f"service {owner!r} {relation} unknown service {name!r}")
            resolved.append(index[name])
        return resolved

    loggers: List[Optional[int]] = []
    for svc in services:
        if isinstance(svc.log, LogService):
            loggers.append(resolve(svc.name, [svc.log.name], "logs to")[0])
        else:
            loggers.append(None)

    needs, wants, conflicts, groups = [], [], [], []
    for svc, logger in zip(services, loggers):
        extra = [logger] if logger is not None else []
        needs.append(list(dict.fromkeys(resolve(svc.name, svc.needs, "needs") + extra)))
        wants.append(list(dict.fromkeys(resolve(svc.name, svc.wants, "wants"))))
        conflicts.append(
            list(dict.fromkeys(resolve(svc.name, svc.conflicts, "conflicts with")))
        )
        groups.append(list(dict.fromkeys(resolve(svc.name, svc.groups, "groups") + extra)))

    count = len(services)
    upward = [needs[i] + wants[i] for i in range(count)]
    dependents: List[List[int]] = [[] for _ in range(count)]
    conflicted_by: List[List[int]] = [[] for _ in range(count)]
    for i in range(count):
        for dep in upward[i]:
            dependents[dep].append(i)
        for other in conflicts[i]:
            conflicted_by[other].append(i)

    slots = []
    for i, svc in enumerate(services):
        up = _closure(i, upward)
        down_conflicts = set(conflicts[i])
        for dep in up:
            down_conflicts.update(conflicts[dep])
        down_conflicts.discard(i)
        related = set(dependents[i]) | set(upward[i]) | set(conflicts[i]) | set(conflicted_by[i])
        related.discard(i)
        slots.append(
            ServiceSlot(
                index=i,
                service=svc,
                needs=tuple(needs[i]),
                wants=tuple(wants[i]),
                conflicts=tuple(conflicts[i]),
                groups=tuple(groups[i]),
                stop_dependencies=tuple(sorted(set(dependents[i]))),
                propagate_dirty=tuple(sorted(related)),
                target_up_propagate_up=up,
                target_up_propagate_down=tuple(sorted(down_conflicts)),
                target_down_propagate_down=_closure(i, dependents),
                is_logger=i in loggers,
                logger=loggers[i],
                state=State.DOWN,
                target=svc.init_target,
                time=now,
                dirty=True,
            )
        )
    return slots


def _close_pipe(pipe: Optional[Tuple[int, int]]) -> None:
    if pipe is None:
        return
    for fd in pipe:
        try:
            os.close(fd)
        except OSError:
            pass


def _settle_notify(slot: ServiceSlot) -> None:
    """Signal waiters that the service reached a stable state."""
    if slot.settle_pipe is not None:
        try:
            os.write(slot.settle_pipe[1], b"\x01")
        except OSError:
            pass


def _settle_clear(slot: ServiceSlot) -> None:
    """Drain the settle pipe when the service leaves a stable state."""
    if slot.settle_pipe is not None:
        try:
            os.read(slot.settle_pipe[0], _PIPE_BUF)
        except OSError:
            pass


class ServiceTable:
    """All services, with the rules that move each towards its target."""

    def __init__(self, config: Config, now: int, spawner: Optional[Spawner] = None) -> None:
        self.config = config
        self.spawner = spawner if spawner is not None else Spawner()
        self.slots: List[ServiceSlot] = _build_slots(config.services, now)

    def __iter__(self) -> Iterator[ServiceSlot]:
        return iter(self.slots)

    def __len__(self) -> int:
        return len(self.slots)

    def __getitem__(self, index: int) -> ServiceSlot:
        return self.slots[index]

    # Lookups

    def find_by_name(self, name: str) -> Optional[ServiceSlot]:
        return next((s for s in self.slots if s.name == name), None)

    def find_by_pid(self, pid: int) -> Optional[ServiceSlot]:
        return next((s for s in self.slots if s.pid == pid), None)

    def find_by_supervisor_pid(self, pid: int) -> Optional[ServiceSlot]:
        return next((s for s in self.slots if s.supervisor_pid == pid), None)

    def find_by_direct_or_supervisor_pid(self, pid: int) -> Optional[ServiceSlot]:
        return next(
            (s for s in self.slots if s.pid == pid or s.supervisor_pid == pid), None
        )

    def find_dirty_index(self) -> Optional[int]:
        return next((s.index for s in self.slots if s.dirty), None)

    def all_down_or_err(self) -> bool:
        return all(
            s.state in (State.DOWN, State.FAILED, State.CANNOT_STOP) for s in self.slots
        )

    def any_bad(self) -> bool:
        return any(s.state.bad() for s in self.slots)

    # Transition decisions

    def next_state(self, index: int, now: int) -> NextState:
        """Decide the next transition for one service."""
        if not 0 <= index < len(self.slots):
            return NextState.NONE
        svc = self.slots[index]
        state = svc.state
        if state is State.DOWN:
            return self._from_down(svc)
        if state is State.WAITING_TO_START:
            return self._from_waiting_to_start(svc)
        if state is State.SETTING_UP:
            return self._from_setting_up(svc, now)
        if state is State.STARTING:
            return self._from_starting(svc, now)
        if state is State.UP:
            return self._from_up(svc, now)
        if state is State.WAITING_TO_STOP:
            return self._from_waiting_to_stop(svc)
        if state is State.STOPPING:
            return self._from_timed_exit(svc, now, svc.max_stop_time_millis, NextState.CLEANING_UP)
        if state is State.CLEANING_UP:
            return self._from_timed_exit(svc, now, svc.max_cleanup_time_millis, NextState.DOWN)
        if state is State.FORCE_DOWN:
            return self._from_force_down(svc, now)
        if state is State.RETRYING:
            return self._from_retrying(svc, now)
        if state is State.FAILED:
            return NextState.FORCE_DOWN if svc.has_pid() else NextState.NONE
        # CannotStop: a process that finally vanished is still treated as a failure.
        return NextState.NONE if svc.has_pid() else NextState.FAILED_OR_RETRY

    @staticmethod
    def _from_down(svc: ServiceSlot) -> NextState:
        if svc.has_pid():
            return NextState.FORCE_DOWN
        if svc.target is Target.DOWN:
            return NextState.NONE
        if svc.target is Target.RESTART:
            # Applying Down again turns the Restart target into Up.
            return NextState.DOWN
        return NextState.WAITING_TO_START

    def _from_waiting_to_start(self, svc: ServiceSlot) -> NextState:
        if svc.has_pid():
            return NextState.FORCE_DOWN
        if svc.target in (Target.DOWN, Target.RESTART):
            return NextState.DOWN
        if self._start_deps_satisfied(svc):
            return NextState.SETTING_UP
        return NextState.NONE

    @staticmethod
    def _elapsed(svc: ServiceSlot, now: int, limit: Optional[int]) -> bool:
        return limit is not None and svc.millis_since_change(now) >= limit

    def _from_setting_up(self, svc: ServiceSlot, now: int) -> NextState:
        if svc.service.setup is None:
            return NextState.FORCE_DOWN if svc.has_pid() else NextState.STARTING
        if svc.pid is None and svc.exit_code == 0:
            return NextState.STARTING
        if svc.pid is None:
            return NextState.FAILED_OR_RETRY
        if self._elapsed(svc, now, svc.max_setup_time_millis):
            return NextState.FORCE_DOWN
        return NextState.NONE

    def _from_starting(self, svc: ServiceSlot, now: int) -> NextState:
        if svc.service.run is None:
            return NextState.FORCE_DOWN if svc.has_pid() else NextState.UP
        if not svc.has_pid():
            return NextState.FAILED_OR_RETRY
        if svc.service.ready is Ready.IMMEDIATELY or svc.ready:
            return NextState.UP
        if self._elapsed(svc, now, svc.max_ready_time_millis):
            return NextState.FORCE_DOWN
        return NextState.NONE

    @staticmethod
    def _from_up(svc: ServiceSlot, now: int) -> NextState:
        if svc.target in (Target.DOWN, Target.RESTART):
            return NextState.WAITING_TO_STOP
        if svc.service.run is None:
            return NextState.FORCE_DOWN if svc.has_pid() else NextState.NONE
        if not svc.has_pid():
            return NextState.FAILED_OR_RETRY
        if svc.attempt_count > 0 and svc.millis_since_change(now) >= UP_TIME_MILLIS:
            return NextState.UP_STABLE
        return NextState.NONE

    def _from_waiting_to_stop(self, svc: ServiceSlot) -> NextState:
        if svc.target in (Target.UP, Target.ONCE):
            return NextState.UP
        if self._stop_deps_satisfied(svc):
            return NextState.STOPPING
        return NextState.NONE

    def _from_timed_exit(
        self, svc: ServiceSlot, now: int, limit: Optional[int], on_exit: NextState
    ) -> NextState:
        if not svc.has_pid():
            return on_exit
        if self._elapsed(svc, now, limit):
            return NextState.FORCE_DOWN
        return NextState.NONE

    @staticmethod
    def _from_force_down(svc: ServiceSlot, now: int) -> NextState:
        if not svc.has_pid():
            if svc.target in (Target.UP, Target.ONCE):
                return NextState.FAILED_OR_RETRY
            return NextState.DOWN
        if svc.millis_since_change(now) > FORCED_DOWN_TIME_MILLIS:
            return NextState.CANNOT_STOP
        return NextState.NONE

    @staticmethod
    def _from_retrying(svc: ServiceSlot, now: int) -> NextState:
        if svc.has_pid():
            return NextState.FORCE_DOWN
        if svc.target in (Target.DOWN, Target.RESTART):
            return NextState.DOWN
        # Skip Down to keep the attempt counter.
        if svc.millis_since_change(now) >= svc.retry_delay_millis():
            return NextState.WAITING_TO_START
        return NextState.NONE

    def _deps_in(self, indices: Sequence[int], states: frozenset) -> bool:
        return all(self.slots[i].state in states for i in indices if 0 <= i < len(self.slots))

    def _start_deps_satisfied(self, svc: ServiceSlot) -> bool:
        return (
            self._deps_in(svc.needs, frozenset({State.UP}))
            and self._deps_in(
                svc.wants, frozenset({State.UP, State.FAILED, State.CANNOT_STOP})
            )
            and self._deps_in(svc.conflicts, frozenset({State.DOWN, State.FAILED}))
        )

    def _stop_deps_satisfied(self, svc: ServiceSlot) -> bool:
        return self._deps_in(
            svc.stop_dependencies,
            frozenset({State.DOWN, State.WAITING_TO_START, State.FAILED, State.CANNOT_STOP}),
        )

    # Transition effects

    def apply(self, index: int, next_state: NextState, now: int) -> None:
        """Carry out a transition for one service."""
        if not 0 <= index < len(self.slots):
            return
        svc = self.slots[index]

        if next_state is NextState.NONE:
            svc.dirty = False
            return
        if next_state is NextState.UP_STABLE:
            svc.dirty = False
            svc.attempt_count = 0
            return

        handlers = {
            NextState.DOWN: self._apply_down,
            NextState.WAITING_TO_START: self._apply_waiting_to_start,
            NextState.SETTING_UP: self._apply_setting_up,
            NextState.STARTING: self._apply_starting,
            NextState.UP: self._apply_up,
            NextState.WAITING_TO_STOP: self._apply_waiting_to_stop,
            NextState.STOPPING: self._apply_stopping,
            NextState.CLEANING_UP: self._apply_cleaning_up,
            NextState.FAILED_OR_RETRY: self._apply_failed_or_retry,
            NextState.FORCE_DOWN: self._apply_force_down,
            NextState.CANNOT_STOP: self._apply_cannot_stop,
        }
        handlers[next_state](svc)

        svc.time = now
        # Readiness, if meaningful, was consumed by the transition.
        svc.ready = False
        svc.dirty = True
        for i in svc.propagate_dirty:
            if 0 <= i < len(self.slots):
                self.slots[i].dirty = True

    def _kill(self, pid: int, sig: int) -> None:
        try:
            self.spawner.kill(pid, sig)
        except OSError:
            pass

    @staticmethod
    def _apply_down(svc: ServiceSlot) -> None:
        if svc.target is Target.RESTART:
            svc.target = Target.UP
        elif svc.target is Target.ONCE:
            svc.target = Target.DOWN
        svc.state = State.DOWN
        svc.attempt_count = 0
        _settle_notify(svc)

    @staticmethod
    def _apply_waiting_to_start(svc: ServiceSlot) -> None:
        svc.state = State.WAITING_TO_START
        _settle_clear(svc)

    def _spawn_then(self, svc: ServiceSlot, phase: Run, spawn, state: State) -> None:
        try:
            if phase is not None:
                spawn(svc)
        except OSError:
            self._apply_failed_or_retry(svc)
            return
        svc.state = state
        _settle_clear(svc)

    def _apply_setting_up(self, svc: ServiceSlot) -> None:
        self._spawn_then(
            svc, svc.service.setup, self.spawner.spawn_setting_up, State.SETTING_UP
        )

    def _apply_starting(self, svc: ServiceSlot) -> None:
        self._spawn_then(svc, svc.service.run, self.spawner.spawn_run, State.STARTING)

    @staticmethod
    def _apply_up(svc: ServiceSlot) -> None:
        svc.state = State.UP
        _settle_notify(svc)

    @staticmethod
    def _apply_waiting_to_stop(svc: ServiceSlot) -> None:
        svc.state = State.WAITING_TO_STOP
        _settle_clear(svc)

    def _apply_stopping(self, svc: ServiceSlot) -> None:
        if svc.pid is not None:
            self._kill(svc.pid, signal.SIGTERM)
        svc.state = State.STOPPING
        _settle_clear(svc)

    def _apply_cleaning_up(self, svc: ServiceSlot) -> None:
        self._spawn_then(
            svc, svc.service.cleanup, self.spawner.spawn_cleaning_up, State.CLEANING_UP
        )

    def _apply_force_down(self, svc: ServiceSlot) -> None:
        if svc.supervisor_pid is not None:
            # Tells the supervisor to kill its children until none are left.
            self._kill(svc.supervisor_pid, signal.SIGTERM)
        if svc.pid is not None:
            self._kill(svc.pid, signal.SIGKILL)
        svc.state = State.FORCE_DOWN
        _settle_clear(svc)

    @staticmethod
    def _apply_failed_or_retry(svc: ServiceSlot) -> None:
        svc.attempt_count = min(svc.attempt_count + 1, _U32_MAX)
        limit = svc.max_attempt_count
        if limit is None or svc.attempt_count < limit:
            svc.state = State.RETRYING
            _settle_clear(svc)
            return
        svc.state = State.FAILED
        if svc.target is Target.RESTART:
            svc.target = Target.UP
        elif svc.target is Target.ONCE:
            svc.target = Target.DOWN
        _settle_notify(svc)

    @staticmethod
    def _apply_cannot_stop(svc: ServiceSlot) -> None:
        svc.state = State.CANNOT_STOP
        _settle_notify(svc)

    # Driving the machine

    def settle(self, now: int) -> None:
        """Apply transitions until no service is left dirty."""
        while (index := self.find_dirty_index()) is not None:
            self.apply(index, self.next_state(index, now), now)

    def child_exited(self, pid: int, exit_code: int) -> Optional[ServiceSlot]:
        """Record a reaped child; returns the service it belonged to, if any."""
        svc = self.find_by_pid(pid)
        if svc is not None:
            svc.pid = None
        else:
            svc = self.find_by_supervisor_pid(pid)
            if svc is None:
                return None
            # Without its supervisor the service process cannot be tracked; assume it died.
            svc.pid = None
            svc.supervisor_pid = None
        svc.exit_code = exit_code
        svc.dirty = True
        pipe, svc.stdin_pipe = svc.stdin_pipe, None
        _close_pipe(pipe)
        return svc

    def shutdown(self) -> None:
        """Drive every service down."""
        for svc in self.slots:
            svc.target = Target.DOWN
            svc.dirty = True


__all__ = [
    "UP_TIME_MILLIS",
    "FORCED_DOWN_TIME_MILLIS",
    "NextState",
    "ServiceSlot",
    "Spawner",
    "ServiceTable",
]