"""Control-tool commands that query services and set their targets."""

from __future__ import annotations

import itertools
import sys
from typing import List, Optional, Protocol, Sequence, TextIO, Tuple

from connate.config import Target
from connate.requests import Field, Request, Response, ResponseKind


class Client(Protocol):
    """A connection to the manager that answers one request at a time."""

    def send_and_receive(self, request: Request) -> Response: ...


class CommandError(RuntimeError):
    """A command cannot go on; the message says why."""


def _label(name: str, width: int) -> str:
    """The ``name:`` prefix padded so values line up after the longest name."""
    return f"{name}:" + " " * (width + 1 - len(name))


def _index_names(client: Client) -> Tuple[List[str], bool]:
    """Names of all services in order, and whether listing them failed."""
    names: List[str] = []
    for i in itertools.count():
        response = client.send_and_receive(Request.by_index(Field.NAME, i))
        if response.kind is ResponseKind.NAME:
            names.append(response.value)
        elif response.kind is ResponseKind.SERVICE_NOT_FOUND:
            return names, False
        else:
            return names, response.failed


def _optional(value: Optional[int]) -> str:
    return "-" if value is None else str(value)


def _status_fields(response: Response) -> Optional[List[str]]:
    if response.kind is not ResponseKind.STATUS:
        return None
    state, target, pid, exit_code, seconds = response.value
    return [state.value, target.value, _optional(pid), _optional(exit_code), str(seconds)]


def _widen(widths: List[int], response: Response) -> None:
    fields = _status_fields(response)
    if fields is not None:
        for i, text in enumerate(fields[:4]):
            widths[i] = max(widths[i], len(text))


def _status_padded(response: Response, widths: Sequence[int]) -> str:
    fields = _status_fields(response)
    if fields is None:
        return str(response)
    padded = [text.ljust(width) for text, width in zip(fields, widths)]
    return " ".join(padded + fields[4:])


def cmd_status(client: Client, names: Optional[Sequence[str]], out: Optional[TextIO] = None) -> int:
    """Print status lines; returns the exit code."""
    out = sys.stdout if out is None else out
    names = list(names or ())
    failed = False
    widths = [0, 0, 0, 0]

    if not names:
        all_names, failed = _index_names(client)
        width = max((len(n) for n in all_names), default=0)
        responses = [
            client.send_and_receive(Request.by_index(Field.STATUS, i))
            for i in range(len(all_names))
        ]
        for response in responses:
            _widen(widths, response)
        for i, name in enumerate(all_names):
            label_response = client.send_and_receive(Request.by_index(Field.NAME, i))
            if label_response.kind is ResponseKind.SERVICE_NOT_FOUND:
                break
            if label_response.kind is not ResponseKind.NAME:
                failed |= label_response.failed
                break
            response = client.send_and_receive(Request.by_index(Field.STATUS, i))
            failed |= response.failed
            out.write(_label(label_response.value, width) + _status_padded(response, widths) + "\n")
    elif len(names) == 1:
        response = client.send_and_receive(Request.by_name(Field.STATUS, names[0]))
        failed |= response.failed
        out.write(f"{response}\n")
    else:
        width = max(len(n) for n in names)
        for name in names:
            _widen(widths, client.send_and_receive(Request.by_name(Field.STATUS, name)))
        for name in names:
            response = client.send_and_receive(Request.by_name(Field.STATUS, name))
            failed |= response.failed
            out.write(_label(name, width) + _status_padded(response, widths) + "\n")

    return 1 if failed else 0


def cmd_list(client: Client, out: Optional[TextIO] = None) -> int:
    """Print every service name, one per line; returns the exit code."""
    out = sys.stdout if out is None else out
    names, failed = _index_names(client)
    for name in names:
        out.write(f"{name}\n")
    return 1 if failed else 0


def query_field(
    client: Client,
    names: Optional[Sequence[str]],
    field: Field,
    out: Optional[TextIO] = None,
) -> int:
    """Print one field for the named services, or all of them; returns the exit code.

    A single named service is printed without its name, for easy scripting.
    """
    out = sys.stdout if out is None else out
    names = list(names or ())
    failed = False

    if not names:
        all_names, failed = _index_names(client)
        width = max((len(n) for n in all_names), default=0)
        for i, name in enumerate(all_names):
            response = client.send_and_receive(Request.by_index(field, i))
            failed |= response.failed
            out.write(f"{_label(name, width)}{response}\n")
    elif len(names) == 1:
        response = client.send_and_receive(Request.by_name(field, names[0]))
        failed |= response.failed
        out.write(f"{response}\n")
    else:
        width = max(len(n) for n in names)
        for name in names:
            response = client.send_and_receive(Request.by_name(field, name))
            failed |= response.failed
            out.write(f"{_label(name, width)}{response}\n")

    return 1 if failed else 0


def cmd_set_target(
    client: Client,
    names: Sequence[str],
    target: Target,
    out: Optional[TextIO] = None,
) -> int:
    """Set the target of each named service; returns the exit code."""
    out = sys.stdout if out is None else out
    names = list(names or ())
    if not names:
        raise CommandError("No service specified")

    width = max(len(n) for n in names)
    failed = False
    for name in names:
        response = client.send_and_receive(Request.set_target(name, target))
        if response.failed:
            failed = True
            out.write(f"{_label(name, width)}{response}\n")
        else:
            out.write(f"{_label(name, width)}set target {target.value}\n")
    return 1 if failed else 0


__all__ = [
    "Client",
    "CommandError",
    "cmd_status",
    "cmd_list",
    "query_field",
    "cmd_set_target",
]