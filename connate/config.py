"""Service configuration model: services, their phases, retry and logging policy."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional, Tuple, Union


class Target(enum.Enum):
    """The state a service is driven towards."""

    DOWN = "down"
    UP = "up"
    # Go down first; once down or failed, the target becomes UP.
    RESTART = "restart"
    # Go up; once down or failed, the target becomes DOWN.
    ONCE = "once"


@dataclass(frozen=True)
class Exec:
    """Execute a program by its full path (no $PATH search) with arguments."""

    argv: Tuple[str, ...]

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv:
            raise ValueError("Exec requires at least the program path")
        object.__setattr__(self, "argv", argv)


@dataclass(frozen=True)
class Shell:
    """Run a command through the shell, as `/bin/sh -c <command>`."""

    command: str


@dataclass(frozen=True)
class Call:
    """Run a Python callable; an exception means failure."""

    func: Callable[[], None]


# A phase that does nothing is represented by None.
Run = Optional[Union[Exec, Shell, Call]]


class Ready(enum.Enum):
    """When a service's run phase counts as ready to fulfil dependencies."""

    IMMEDIATELY = "immediately"
    NOTIFY = "notify"
    DAEMONIZE = "daemonize"


@dataclass(frozen=True)
class RetryNever:
    """Never retry a failed service."""


@dataclass(frozen=True)
class RetryAfterFixed:
    """Retry after a fixed delay; None as the count means no limit."""

    after: timedelta
    max_attempt_count: Optional[int] = None


@dataclass(frozen=True)
class RetryAfterDoublingDelay:
    """Retry after a delay that doubles with every attempt; None means no limit."""

    initial_delay: timedelta
    max_attempt_count: Optional[int] = None


Retry = Union[RetryNever, RetryAfterFixed, RetryAfterDoublingDelay]


class FileMode(enum.Enum):
    """How to treat an existing log file."""

    APPEND = "append"
    OVERWRITE = "overwrite"


class FilePerm(enum.Enum):
    """Permissions given to a newly created log file."""

    PUBLIC = "public"
    PRIVATE = "private"

    def mode(self) -> int:
        """The file mode bits for this permission choice."""
        return 0o644 if self is FilePerm.PUBLIC else 0o600


@dataclass(frozen=True)
class LogNone:
    """Discard stdout and stderr (redirected to /dev/null)."""


@dataclass(frozen=True)
class LogInherit:
    """Inherit the manager's stdout and stderr."""


@dataclass(frozen=True)
class LogFile:
    """Send stdout and stderr to a file, creating it if needed."""

    path: str
    mode: FileMode = FileMode.APPEND
    permissions: FilePerm = FilePerm.PRIVATE


@dataclass(frozen=True)
class LogService:
    """Pipe stdout and stderr into the stdin of another service."""

    name: str


Log = Union[LogNone, LogInherit, LogFile, LogService]


class State(enum.Enum):
    """The states a service moves through."""

    DOWN = "down"
    WAITING_TO_START = "waiting-to-start"
    SETTING_UP = "setting-up"
    STARTING = "starting"
    UP = "up"
    WAITING_TO_STOP = "waiting-to-stop"
    STOPPING = "stopping"
    CLEANING_UP = "cleaning-up"
    RETRYING = "retrying"
    FAILED = "failed"
    FORCE_DOWN = "force-down"
    CANNOT_STOP = "cannot-stop"

    def stable(self) -> bool:
        """True for states that do not change without outside influence."""
        return self in _STABLE_STATES

    def bad(self) -> bool:
        """True for states that need manual intervention."""
        return self in _BAD_STATES


_STABLE_STATES = frozenset({State.DOWN, State.UP, State.FAILED, State.CANNOT_STOP})
_BAD_STATES = frozenset({State.FAILED, State.CANNOT_STOP})

_NAME_LISTS = ("needs", "wants", "conflicts", "groups", "env")


@dataclass(frozen=True)
class Service:
    """One service definition; use dataclasses.replace to derive from a default."""

    name: str = "unspecified-service-name"
    init_target: Target = Target.UP
    # Dependency entries
    needs: Tuple[str, ...] = ()
    wants: Tuple[str, ...] = ()
    conflicts: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()
    # Execution entries
    setup: Run = None
    run: Run = None
    ready: Ready = Ready.IMMEDIATELY
    cleanup: Run = None
    stop_all_children: bool = False
    # Retry and timeout entries
    max_setup_time: Optional[timedelta] = timedelta(seconds=10)
    max_ready_time: Optional[timedelta] = timedelta(seconds=10)
    max_stop_time: Optional[timedelta] = timedelta(seconds=2)
    max_cleanup_time: Optional[timedelta] = timedelta(seconds=10)
    retry: Retry = field(default_factory=RetryNever)
    # Execution attribute entries
    log: Log = field(default_factory=LogInherit)
    env: Tuple[str, ...] = ()
    user: Optional[str] = None
    group: Optional[str] = None
    chdir: Optional[str] = None
    no_new_privs: bool = False

    def __post_init__(self) -> None:
        for name in _NAME_LISTS:
            value = getattr(self, name)
            if isinstance(value, str):
                raise TypeError(f"{name} must be a sequence of strings, not a string")
            object.__setattr__(self, name, tuple(value))


@dataclass(frozen=True)
class Config:
    """The whole configuration: lock file, default service and service list."""

    lock_file: Optional[str] = None
    default_service: Service = field(default_factory=Service)
    services: Tuple[Service, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "services", tuple(self.services))


def default_config() -> Config:
    """The configuration shipped by default: no lock file and no services."""
    default_service = Service(
        name="unspecified-service-name",
        init_target=Target.UP,
        max_setup_time=timedelta(seconds=30),
        max_ready_time=timedelta(seconds=10),
        max_stop_time=timedelta(seconds=10),
        max_cleanup_time=timedelta(seconds=10),
        retry=RetryAfterDoublingDelay(
            initial_delay=timedelta(seconds=1),
            max_attempt_count=5,
        ),
        log=LogInherit(),
        env=("PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",),
        no_new_privs=True,
    )
    return Config(lock_file=None, default_service=default_service, services=())


__all__ = [
    "Target",
    "Exec",
    "Shell",
    "Call",
    "Run",
    "Ready",
    "RetryNever",
    "RetryAfterFixed",
    "RetryAfterDoublingDelay",
    "Retry",
    "FileMode",
    "FilePerm",
    "LogNone",
    "LogInherit",
    "LogFile",
    "LogService",
    "Log",
    "State",
    "Service",
    "Config",
    "default_config",
    "dataclasses",
]