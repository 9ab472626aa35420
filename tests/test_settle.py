import errno
import io
import os

import pytest

from connate.config import Call, Config, Ready, Service, State, Target
from connate.machine import ServiceTable, Spawner
from connate.queries import CommandError
from connate.requests import Request, Response, ResponseKind, handle_request
from connate.settle import cmd_settle

NOW = 0


class FakeSpawner(Spawner):
    def __init__(self, fail=False):
        self.fail = fail
        self.next_pid = 40000

    def spawn_run(self, slot):
        if self.fail:
            raise OSError(errno.ENOEXEC, "refused")
        slot.pid = self.next_pid
        self.next_pid += 1

    def kill(self, pid, sig):
        pass


class TableClient:
    def __init__(self, table, on_unlock=None):
        self.table = table
        self.on_unlock = on_unlock
        self.events = []

    def send_and_receive(self, request):
        response = handle_request(self.table, request, NOW)
        self.table.settle(NOW)
        return response

    def unlock(self):
        self.events.append("unlock")
        if self.on_unlock is not None:
            self.on_unlock(self)

    def lock_quiet(self):
        self.events.append("lock")


def make_table(spawner, **service_fields):
    service = Service(name="svc", init_target=Target.DOWN, **service_fields)
    return ServiceTable(Config(services=[service]), NOW, spawner)


def close_settle_pipes(table):
    for slot in table:
        if slot.settle_pipe is not None:
            for fd in slot.settle_pipe:
                os.close(fd)
            slot.settle_pipe = None


def test_settle_immediately_stable():
    table = make_table(FakeSpawner())
    client = TableClient(table)
    out = io.StringIO()
    assert cmd_settle(client, ["svc"], Target.UP, os.getpid(), out) == 0
    assert out.getvalue() == f"svc: {State.UP.value}\n"
    assert client.events == []


def test_settle_waits_on_pipe_until_ready():
    table = make_table(FakeSpawner(), run=Call(lambda: None), ready=Ready.NOTIFY)

    def mark_ready(client):
        slot = client.table.find_by_name("svc")
        response = client.send_and_receive(Request.service_ready(slot.pid))
        assert response.kind is ResponseKind.OKAY

    client = TableClient(table, on_unlock=mark_ready)
    out = io.StringIO()
    try:
        code = cmd_settle(client, ["svc"], Target.UP, os.getpid(), out)
    finally:
        close_settle_pipes(table)
    assert code == 0
    assert out.getvalue() == f"svc: {State.UP.value}\n"
    assert client.events == ["unlock", "lock"]
    assert table.find_by_name("svc").state is State.UP


def test_settle_failed_service_is_bad():
    table = make_table(FakeSpawner(fail=True), run=Call(lambda: None))
    client = TableClient(table)
    out = io.StringIO()
    assert cmd_settle(client, ["svc"], Target.UP, os.getpid(), out) == 1
    assert out.getvalue() == f"svc: {State.FAILED.value}\n"


def test_settle_unknown_service():
    table = make_table(FakeSpawner())
    client = TableClient(table)
    out = io.StringIO()
    assert cmd_settle(client, ["svc", "ghost"], Target.UP, os.getpid(), out) == 1
    assert out.getvalue() == "ghost: " + str(Response(ResponseKind.SERVICE_NOT_FOUND)) + "\n"
    assert table.find_by_name("svc").target is Target.UP


def test_settle_down_of_up_service():
    table = make_table(FakeSpawner())
    client = TableClient(table)
    cmd_settle(client, ["svc"], Target.UP, os.getpid(), io.StringIO())
    out = io.StringIO()
    assert cmd_settle(client, ["svc"], Target.DOWN, os.getpid(), out) == 0
    assert out.getvalue() == f"svc: {State.DOWN.value}\n"


def test_settle_requires_names():
    table = make_table(FakeSpawner())
    with pytest.raises(CommandError):
        cmd_settle(TableClient(table), [], Target.UP, os.getpid(), io.StringIO())


def test_settle_disabled_raises():
    class DisabledClient:
        def send_and_receive(self, request):
            if request.kind is Request.Kind.SET_TARGET:
                return Response(ResponseKind.OKAY)
            if request.kind is Request.Kind.QUERY_BY_NAME:
                return Response(ResponseKind.STATE, State.STARTING)
            return Response(ResponseKind.SETTLE_DISABLED)

        def unlock(self):
            pass

        def lock_quiet(self):
            pass

    out = io.StringIO()
    with pytest.raises(CommandError):
        cmd_settle(DisabledClient(), ["svc"], Target.UP, os.getpid(), out)
    assert out.getvalue().endswith(ResponseKind.SETTLE_DISABLED.value + "\n")