"""Set service targets and wait until each service reaches a stable state."""

from __future__ import annotations

import os
import select
import sys
from typing import Optional, Protocol, Sequence, TextIO

from connate.config import State, Target
from connate.queries import CommandError
from connate.requests import Field, Request, Response, ResponseKind


class LockingClient(Protocol):
    """A manager connection whose request lock can be released while waiting."""

    def send_and_receive(self, request: Request) -> Response: ...

    def lock_quiet(self) -> None: ...

    def unlock(self) -> None: ...


def _label(name: str, width: int) -> str:
    return f"{name}:" + " " * (width + 1 - len(name))


def _query_state(client: LockingClient, name: str) -> Response:
    return client.send_and_receive(Request.by_name(Field.STATE, name))


def _wait_for_stable(
    client: LockingClient, name: str, connate_pid: int, out: TextIO
) -> Optional[State]:
    """Block on the service's settle pipe until it is stable; None if it vanished."""
    response = client.send_and_receive(Request.settle_fd(name))
    if response.kind is ResponseKind.SETTLE_DISABLED:
        out.write(f"{ResponseKind.SETTLE_DISABLED.value}\n")
        raise CommandError("Settle feature is disabled in this build of connate")
    if response.kind is ResponseKind.SERVICE_NOT_FOUND:
        return None
    if response.kind is not ResponseKind.SETTLE_FD:
        raise CommandError("Unexpected response to QuerySettleFd")

    path = f"/proc/{connate_pid}/fd/{response.value}"
    pipe_fd = os.open(path, os.O_RDONLY)
    try:
        poller = select.poll()
        poller.register(pipe_fd, select.POLLIN)
        while True:
            # Let supervisors and other clients through while blocked.
            client.unlock()
            try:
                poller.poll()
            except OSError as exc:
                raise CommandError("Unable to poll() on service settle fd") from exc
            client.lock_quiet()

            state_response = _query_state(client, name)
            if state_response.kind is not ResponseKind.STATE:
                raise CommandError("Unexpected response to QueryByNameState")
            state = state_response.value
            if state.stable():
                return state
    finally:
        os.close(pipe_fd)


def cmd_settle(
    client: LockingClient,
    names: Sequence[str],
    target: Target,
    connate_pid: int,
    out: Optional[TextIO] = None,
) -> int:
    """Set the target of every named service, then wait for each to settle.

    Prints each service's final state; returns 1 if any is not found or ends
    Failed or CannotStop, else 0.
    """
    out = sys.stdout if out is None else out
    names = list(names or ())
    if not names:
        raise CommandError("No service specified")

    width = max(len(n) for n in names)

    for name in names:
        response = client.send_and_receive(Request.set_target(name, target))
        if response.failed:
            out.write(f"{_label(name, width)}{response}\n")
            return 1

    any_bad = False
    for name in names:
        out.write(_label(name, width))

        response = _query_state(client, name)
        if response.kind is ResponseKind.SERVICE_NOT_FOUND:
            out.write(f"{ResponseKind.SERVICE_NOT_FOUND.value}\n")
            return 1
        if response.kind is not ResponseKind.STATE:
            raise CommandError("Unexpected response to QueryByNameState")
        state = response.value

        if not state.stable():
            settled = _wait_for_stable(client, name, connate_pid, out)
            if settled is None:
                out.write(f"{ResponseKind.SERVICE_NOT_FOUND.value}\n")
                return 1
            state = settled

        out.write(f"{state.value}\n")
        any_bad |= state.bad()

    return 1 if any_bad else 0


__all__ = ["LockingClient", "cmd_settle"]