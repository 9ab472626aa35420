"""Control-tool commands that list a service's dependency relations."""

from __future__ import annotations

import itertools
import sys
from typing import List, Optional, Sequence, TextIO, Tuple

from connate.queries import Client
from connate.requests import Field, Request, ResponseKind

RELATIONS = ("needs", "wants", "conflicts", "groups")


def _label(name: str, width: int) -> str:
    """The ``name:`` prefix padded so values line up after the longest name."""
    return f"{name}:" + " " * (width + 1 - len(name))


def _all_names(client: Client) -> Tuple[List[str], bool]:
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


def _relation_line(client: Client, name: str, relation: str) -> Tuple[str, bool]:
    """The related service names as one line, and whether the query failed."""
    related: List[str] = []
    for i in itertools.count():
        response = client.send_and_receive(Request.query_relation(relation, i, name))
        if response.kind is ResponseKind.NAME:
            related.append(response.value)
        elif response.kind is ResponseKind.FIELD_IS_NONE:
            break
        else:
            # The service is unknown, or the manager reported an error.
            return " ".join(related) + f"{response}\n", True
    return " ".join(related) + "\n", False


def query_dependencies(
    client: Client,
    names: Optional[Sequence[str]],
    relation: str,
    out: Optional[TextIO] = None,
) -> int:
    """Print one relation (needs, wants, conflicts or groups) per service.

    With no names every service is listed, each line led by its name. A single
    named service is printed without its name. Returns the exit code.
    """
    if relation not in RELATIONS:
        raise ValueError(f"unknown relation {relation!r}")
    out = sys.stdout if out is None else out
    names = list(names or ())
    failed = False

    if len(names) == 1:
        line, line_failed = _relation_line(client, names[0], relation)
        out.write(line)
        return 1 if line_failed else 0

    if not names:
        names, failed = _all_names(client)

    width = max((len(n) for n in names), default=0)
    for name in names:
        line, line_failed = _relation_line(client, name, relation)
        failed |= line_failed
        out.write(_label(name, width) + line)

    return 1 if failed else 0


__all__ = ["RELATIONS", "query_dependencies"]