import errno
import os
import signal
from datetime import timedelta

import pytest

from connate.config import (
    Config,
    Exec,
    LogService,
    Ready,
    RetryAfterDoublingDelay,
    RetryAfterFixed,
    Service,
    State,
    Target,
)
from connate.examples import user_config
from connate.machine import (
    FORCED_DOWN_TIME_MILLIS,
    UP_TIME_MILLIS,
    NextState,
    ServiceTable,
    Spawner,
)

T0 = 1_000 * 10**9


def ns(**kwargs):
    return timedelta(**kwargs) // timedelta(microseconds=1) * 1000


class FakeSpawner:
    def __init__(self, fail=False):
        self.started = []
        self.kills = []
        self.next_pid = 100
        self.fail = fail

    def _start(self, slot, phase):
        if phase is None:
            return
        if self.fail:
            raise OSError(errno.EAGAIN, "fork failed")
        self.next_pid += 1
        slot.pid = self.next_pid
        self.started.append((slot.name, phase))

    def spawn_setting_up(self, slot):
        self._start(slot, slot.service.setup)

    def spawn_run(self, slot):
        self._start(slot, slot.service.run)

    def spawn_cleaning_up(self, slot):
        self._start(slot, slot.service.cleanup)

    def kill(self, pid, sig):
        self.kills.append((pid, sig))


def table(*services, spawner=None):
    return ServiceTable(Config(services=services), T0, spawner or FakeSpawner())


RUN = Exec(("/bin/daemon",))


def test_service_without_phases_comes_up():
    t = table(Service(name="a"))
    t.settle(T0)
    assert t.find_by_name("a").state is State.UP
    assert t.find_dirty_index() is None


def test_init_target_down_stays_down():
    t = table(Service(name="a", init_target=Target.DOWN))
    t.settle(T0)
    assert t.find_by_name("a").state is State.DOWN


def test_run_immediately_ready_comes_up_with_pid():
    spawner = FakeSpawner()
    t = table(Service(name="a", run=RUN), spawner=spawner)
    t.settle(T0)
    slot = t.find_by_name("a")
    assert slot.state is State.UP
    assert slot.pid == spawner.next_pid
    assert t.find_by_pid(slot.pid) is slot


def test_notify_waits_for_ready_and_unblocks_needs():
    t = table(
        Service(name="a", run=RUN, ready=Ready.NOTIFY),
        Service(name="b", needs=("a",)),
    )
    t.settle(T0)
    a, b = t.find_by_name("a"), t.find_by_name("b")
    assert a.state is State.STARTING
    assert b.state is State.WAITING_TO_START
    a.ready = True
    a.dirty = True
    t.settle(T0)
    assert a.state is State.UP
    assert b.state is State.UP
    assert a.ready is False


def test_ready_timeout_forces_down():
    spawner = FakeSpawner()
    t = table(Service(name="a", run=RUN, ready=Ready.NOTIFY), spawner=spawner)
    t.settle(T0)
    slot = t.find_by_name("a")
    pid = slot.pid
    slot.dirty = True
    t.settle(T0 + ns(seconds=10))
    assert slot.state is State.FORCE_DOWN
    assert (pid, signal.SIGKILL) in spawner.kills


def test_wants_satisfied_by_failed_dependency():
    t = table(
        Service(name="a", setup=Exec(("/bin/setup",))),
        Service(name="b", wants=("a",)),
    )
    t.settle(T0)
    a, b = t.find_by_name("a"), t.find_by_name("b")
    assert a.state is State.SETTING_UP
    assert b.state is State.WAITING_TO_START
    assert t.child_exited(a.pid, 3) is a
    t.settle(T0)
    assert a.state is State.FAILED
    assert a.exit_code == 3
    assert b.state is State.UP
    assert t.any_bad()
    assert t.next_state(a.index, T0) is NextState.NONE


def test_setup_success_proceeds_to_run():
    spawner = FakeSpawner()
    t = table(Service(name="a", setup=Exec(("/bin/setup",)), run=RUN), spawner=spawner)
    t.settle(T0)
    slot = t.find_by_name("a")
    t.child_exited(slot.pid, 0)
    t.settle(T0)
    assert slot.state is State.UP
    assert [phase for _, phase in spawner.started] == [Exec(("/bin/setup",)), RUN]


def test_conflict_blocks_until_other_down():
    spawner = FakeSpawner()
    t = table(
        Service(name="a", run=RUN),
        Service(name="b", conflicts=("a",)),
        spawner=spawner,
    )
    t.settle(T0)
    a, b = t.find_by_name("a"), t.find_by_name("b")
    assert a.state is State.UP
    assert b.state is State.WAITING_TO_START
    a.target = Target.DOWN
    a.dirty = True
    t.settle(T0)
    assert a.state is State.STOPPING
    assert spawner.kills == [(a.pid, signal.SIGTERM)]
    t.child_exited(a.pid, 0)
    t.settle(T0)
    assert a.state is State.DOWN
    assert b.state is State.UP


def test_shutdown_brings_everything_down():
    spawner = FakeSpawner()
    t = table(Service(name="a", run=RUN), Service(name="b", needs=("a",)), spawner=spawner)
    t.settle(T0)
    assert not t.all_down_or_err()
    a = t.find_by_name("a")
    pid = a.pid
    t.shutdown()
    t.settle(T0)
    # a cannot stop before its dependent b
    assert t.find_by_name("b").state is State.DOWN
    assert a.state is State.STOPPING
    t.child_exited(pid, 0)
    t.settle(T0)
    assert t.all_down_or_err()
    assert not t.any_bad()
    assert all(slot.target is Target.DOWN for slot in t)


def test_restart_goes_down_then_up_again():
    spawner = FakeSpawner()
    t = table(Service(name="a", run=RUN), spawner=spawner)
    t.settle(T0)
    slot = t.find_by_name("a")
    first_pid = slot.pid
    slot.target = Target.RESTART
    slot.dirty = True
    t.settle(T0)
    assert slot.state is State.STOPPING
    t.child_exited(first_pid, 0)
    t.settle(T0)
    assert slot.state is State.UP
    assert slot.target is Target.UP
    assert slot.pid != first_pid
    assert slot.pid is not None


def test_once_target_drops_to_down_after_exit():
    t = table(Service(name="a", run=RUN, init_target=Target.ONCE))
    t.settle(T0)
    slot = t.find_by_name("a")
    assert slot.state is State.UP
    t.child_exited(slot.pid, 1)
    t.settle(T0)
    assert slot.state is State.FAILED
    assert slot.target is Target.DOWN


def test_stop_timeout_then_cannot_stop():
    spawner = FakeSpawner()
    t = table(Service(name="a", run=RUN), spawner=spawner)
    t.settle(T0)
    slot = t.find_by_name("a")
    pid = slot.pid
    slot.target = Target.DOWN
    slot.dirty = True
    t.settle(T0)
    slot.dirty = True
    t.settle(T0 + ns(milliseconds=slot.max_stop_time_millis))
    assert slot.state is State.FORCE_DOWN
    assert (pid, signal.SIGKILL) in spawner.kills
    stopped_at = slot.time
    slot.dirty = True
    t.settle(stopped_at + ns(milliseconds=FORCED_DOWN_TIME_MILLIS))
    assert slot.state is State.FORCE_DOWN
    slot.dirty = True
    t.settle(stopped_at + ns(milliseconds=FORCED_DOWN_TIME_MILLIS + 1))
    assert slot.state is State.CANNOT_STOP
    assert t.any_bad()


def test_retry_after_fixed_delay_and_stable_reset():
    t = table(
        Service(
            name="a",
            run=RUN,
            retry=RetryAfterFixed(after=timedelta(seconds=1), max_attempt_count=3),
        )
    )
    t.settle(T0)
    slot = t.find_by_name("a")
    t.child_exited(slot.pid, 1)
    t.settle(T0)
    assert slot.state is State.RETRYING
    assert slot.attempt_count == 1
    slot.dirty = True
    t.settle(T0 + ns(milliseconds=999))
    assert slot.state is State.RETRYING
    slot.dirty = True
    t.settle(T0 + ns(seconds=1))
    assert slot.state is State.UP
    assert slot.attempt_count == 1
    slot.dirty = True
    t.settle(slot.time + ns(milliseconds=UP_TIME_MILLIS))
    assert slot.state is State.UP
    assert slot.attempt_count == 0


def test_retry_exhausted_fails():
    t = table(
        Service(
            name="a",
            run=RUN,
            retry=RetryAfterFixed(after=timedelta(0), max_attempt_count=2),
        )
    )
    t.settle(T0)
    slot = t.find_by_name("a")
    t.child_exited(slot.pid, 1)
    t.settle(T0)
    t.child_exited(slot.pid, 1)
    t.settle(T0)
    assert slot.state is State.FAILED
    assert slot.attempt_count == 2


def test_retry_delay_fixed_and_doubling():
    t = table(
        Service(name="f", retry=RetryAfterFixed(after=timedelta(milliseconds=1500))),
        Service(name="d", retry=RetryAfterDoublingDelay(initial_delay=timedelta(seconds=1))),
    )
    assert t.find_by_name("f").retry_delay_millis() == 1500
    d = t.find_by_name("d")
    d.attempt_count = 1
    first = d.retry_delay_millis()
    d.attempt_count = 2
    second = d.retry_delay_millis()
    d.attempt_count = 3
    third = d.retry_delay_millis()
    assert first == 1000
    assert second == 2 * first
    assert third == 2 * second


def test_spawn_failure_counts_as_failure():
    t = table(Service(name="a", run=RUN), spawner=FakeSpawner(fail=True))
    t.settle(T0)
    slot = t.find_by_name("a")
    assert slot.state is State.FAILED
    assert slot.pid is None


def test_default_spawner_refuses_exec():
    t = ServiceTable(Config(services=(Service(name="a", run=RUN),)), T0, Spawner())
    with pytest.raises(OSError) as info:
        Spawner().spawn_run(t.find_by_name("a"))
    assert info.value.errno == errno.ENOEXEC
    t.settle(T0)
    assert t.find_by_name("a").state is State.FAILED


def test_default_spawner_skips_missing_phase():
    t = ServiceTable(Config(services=(Service(name="a"),)), T0, Spawner())
    slot = t.find_by_name("a")
    Spawner().spawn_setting_up(slot)
    assert slot.pid is None


def test_unexpected_process_is_forced_down():
    spawner = FakeSpawner()
    t = table(Service(name="a", init_target=Target.DOWN), spawner=spawner)
    slot = t.find_by_name("a")
    slot.pid = 4242
    assert t.next_state(slot.index, T0) is NextState.FORCE_DOWN
    t.settle(T0)
    assert (4242, signal.SIGKILL) in spawner.kills


def test_supervisor_exit_clears_service():
    t = table(Service(name="a"))
    slot = t.find_by_name("a")
    slot.pid = 50
    slot.supervisor_pid = 40
    assert t.find_by_direct_or_supervisor_pid(40) is slot
    assert t.find_by_direct_or_supervisor_pid(50) is slot
    assert t.find_by_supervisor_pid(40) is slot
    assert t.child_exited(40, 9) is slot
    assert slot.pid is None
    assert slot.supervisor_pid is None
    assert slot.exit_code == 9


def test_unknown_child_is_ignored():
    t = table(Service(name="a"))
    assert t.child_exited(999, 0) is None
    assert t.find_by_name("missing") is None


def test_child_exit_closes_stdin_pipe():
    t = table(Service(name="a"))
    slot = t.find_by_name("a")
    read_fd, write_fd = os.pipe()
    slot.pid = 77
    slot.stdin_pipe = (read_fd, write_fd)
    t.child_exited(77, 0)
    assert slot.stdin_pipe is None
    with pytest.raises(OSError):
        os.fstat(read_fd)


def test_settle_pipe_notified_on_up():
    t = table(Service(name="a"))
    slot = t.find_by_name("a")
    read_fd, write_fd = os.pipe()
    os.set_blocking(read_fd, False)
    slot.settle_pipe = (read_fd, write_fd)
    try:
        t.settle(T0)
        assert slot.state is State.UP
        assert os.read(read_fd, 16) == b"\x01"
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_relations_resolved_for_user_config():
    t = ServiceTable(user_config(), T0, FakeSpawner())
    idx = {slot.name: slot.index for slot in t}
    xorg = t.find_by_name("xorg")
    assert set(xorg.stop_dependencies) == {idx["dwm"], idx["dwmstatus"], idx["xcape"], idx["dunst"]}
    assert {idx["dwm"], idx["dwmstatus"]} <= set(xorg.target_down_propagate_down)
    dwmstatus = t.find_by_name("dwmstatus")
    assert dwmstatus.needs == (idx["xorg"], idx["dwm"])
    assert set(dwmstatus.target_up_propagate_up) == {idx["xorg"], idx["dwm"]}
    assert t.find_by_name("mpd").conflicts == (idx["moc"],)
    assert idx["moc"] in t.find_by_name("mpd").target_up_propagate_down


def test_log_service_implies_needs_and_groups():
    t = table(Service(name="logger"), Service(name="a", log=LogService("logger")))
    logger, a = t.find_by_name("logger"), t.find_by_name("a")
    assert a.needs == (logger.index,)
    assert a.groups == (logger.index,)
    assert a.logger == logger.index
    assert logger.is_logger
    assert not a.is_logger


def test_unknown_dependency_rejected():
    with pytest.raises(ValueError):
        table(Service(name="a", needs=("ghost",)))


def test_duplicate_name_rejected():
    with pytest.raises(ValueError):
        table(Service(name="a"), Service(name="a"))