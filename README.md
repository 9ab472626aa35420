# connate

`connate` is the core of a Linux service manager. Services and the
dependencies between them are described as plain Python objects. A state
machine then moves every service towards its target: up, down, restart, or
start once.

## Modules

- `connate.config` is the configuration model. A `Config` holds a
  `lock_file`, a `default_service` and a tuple of `services`.
  - A `Service` names its `needs`, `wants`, `conflicts` and `groups`.
  - Its `setup`, `run` and `cleanup` phases are each `None`, `Exec`, `Shell` or `Call`.
  - It has a `Ready` policy and a retry policy: `RetryNever`, `RetryAfterFixed` or `RetryAfterDoublingDelay`.
  - It has a log setting: `LogNone`, `LogInherit`, `LogFile` or `LogService`.
  - It has per-phase timeouts.

  `default_config()` returns the stock configuration. It has no lock file and
  no services, and its default service retries with a doubling delay
  (1 s, up to 5 attempts).
- `connate.examples.user_config()` is a complete per-user session. It has agents, an X session with its clients, and two music daemons that conflict with each other.
- `connate.machine` holds the state machine.
  - `ServiceTable` builds one `ServiceSlot` per service. It resolves the relations and rejects unknown or duplicate names with `ValueError`.
  - `next_state` decides the `NextState` of a slot, and `apply` carries it out.
  - `settle(now)` repeats both until no slot is dirty.
  - Phases are started through a `Spawner`.
- `connate.requests` defines `Request` and `Response`.
  - `handle_request(table, request, now, exec_hook)` answers queries, records supervisor and readiness notices, and changes targets.
  - Target changes use `set_target`, which passes the new target on to dependencies, dependents, conflicts and group members.
- `connate.scheduling.calculate_poll_timeout(table, now)` returns the time in milliseconds until the next service deadline, and the slot it belongs to.
- `connate.session` keeps runtime state across a re-exec.
  - `save_session` writes the state of every slot to a binary stream, and `load_session` reads it back.
  - `load_session` stops the processes of services that are no longer configured.
  - `acquire_lock_file(path)` takes an exclusive lock on the file and returns its descriptor. If another process holds the lock, it raises `LockHeldError`, naming the PID of the holder.
- `connate.procfs` parses `/proc/<pid>/stat`.
  - `parse_stat_ppid` and `read_proc_stat_ppid` read a process's parent.
  - `find_connate_child` walks up the process tree to the manager's direct child.
- `connate.queries`, `connate.deps`, `connate.settle` and `connate.cli` make up the control client.
  - Status, list and field queries.
  - Dependency listings.
  - Setting targets.
  - Setting a target and waiting for each service to reach a stable state.
  - `parse_command`, which turns an argument list into a `Command`, and `run_command`, which carries it out and returns an exit code.

## Service states

Going up:

    DOWN -> WAITING_TO_START -> SETTING_UP -> STARTING -> UP

Going down:

    UP -> WAITING_TO_STOP -> STOPPING -> CLEANING_UP -> DOWN

A failed phase leads to `RETRYING`, and to `FAILED` once the allowed attempts
are used up. A process that does not stop is killed in `FORCE_DOWN` and ends
in `CANNOT_STOP`. `State.stable()` is true for `DOWN`, `UP`, `FAILED` and
`CANNOT_STOP`. `State.bad()` is true for the last two.

## Describing services

```python
from dataclasses import replace
from connate.config import Config, Exec, FileMode, FilePerm, LogFile, Service, default_config

base = default_config().default_service

network = replace(base, name="network", run=Exec(("/usr/bin/dhcpcd", "--nobackground")))
sshd = replace(
    base,
    name="sshd",
    needs=("network",),
    run=Exec(("/usr/sbin/sshd", "-D")),
    log=LogFile(path="/var/log/sshd.log", mode=FileMode.OVERWRITE, permissions=FilePerm.PRIVATE),
)
config = Config(default_service=base, services=(network, sshd))
```

A service with no `run` phase is virtual. It holds no process, but it still
brings its dependencies and groups up and down with it.

## Driving the machine and the control client

Times are monotonic readings in nanoseconds.

```python
import time
from connate.cli import parse_command, run_command
from connate.examples import user_config
from connate.machine import ServiceTable
from connate.requests import handle_request

table = ServiceTable(user_config(), time.monotonic_ns())
table.settle(time.monotonic_ns())

class LocalClient:
    def send_and_receive(self, request):
        return handle_request(table, request, time.monotonic_ns())

command = parse_command(["conctl", "1", "status"], env={})
exit_code = run_command(command, LocalClient())
```

Other calls on the table:

- When a child is reaped, report it with `table.child_exited(pid, exit_code)`, then call `settle` again.
- `table.shutdown()` sets every target to down.
- Once `table.all_down_or_err()` is true, the manager may exit. It should exit with a failure status if `table.any_bad()` is true.

Errors raised by the client:

- Commands that cannot go on raise `connate.queries.CommandError`.
- `run_command` needs a client for every command except help and `PID`.
- The settle commands (`UP`, `DOWN`, `RESTART`, `ONCE`) also need `lock_quiet()` and `unlock()` on the client. They must run where `/proc/<pid>/fd` of the manager can be opened.

## What the package does not do

- **No launching of programs.** The default `Spawner` runs `Call` phases to completion in the current process, with output sent where the service's log setting says. It refuses `Exec` and `Shell` phases with `OSError(ENOEXEC)`. With it, those services fail and are retried. To launch processes, subclass `Spawner`.
- **No daemon main loop.** There is no signal handling, reaping loop, polling loop, or re-exec of the manager itself.
- **No transport.** There is no channel between client and manager. A client is any object with `send_and_receive(request)`, like the one above.
- **No installed commands.** The package puts no commands on your path. `parse_command` and `run_command` are library functions.