from __future__ import annotations

import itertools
import logging
import os
import signal
from types import SimpleNamespace

import pytest

from socketpipe.errors import SocketError, WaitError
from socketpipe.lifecycle import (
    CONSUMER,
    GATEWAY,
    PRODUCER,
    ChildProcess,
    LifecycleTracker,
    exit_code_from_status,
)

pytestmark = pytest.mark.skipif(os.name != "posix", reason="POSIX wait statuses")

LOGGER = logging.getLogger("socketpipe.test")
PIDS = {GATEWAY: 100, PRODUCER: 101, CONSUMER: 102}


def exited(code: int) -> int:
    return code << 8


def killed(signum: int) -> int:
    return signum


class FakeConnection:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[str] = []
        self.fail = fail

    def shutdown_write(self) -> None:
        if self.fail:
            raise SocketError("shutdown(SHUT_WR) failed: Bad file descriptor")
        self.calls.append("write")

    def shutdown_read(self) -> None:
        self.calls.append("read")


def scripted_waiter(events):
    queue = list(events)

    def waiter(pid: int, options: int):
        assert (pid, options) == (-1, 0)
        if not queue:
            raise ChildProcessError(10, "No child processes")
        return queue.pop(0)

    return waiter


def make_tracker(roles, events, connection=None) -> LifecycleTracker:
    tracker = LifecycleTracker(
        LOGGER,
        connection if connection is not None else FakeConnection(),
        waiter=scripted_waiter(events),
    )
    for role in roles:
        proc = SimpleNamespace(pid=PIDS[role], returncode=None)
        tracker.track(ChildProcess(role=role, process=proc))
    return tracker


def test_exit_code_from_status() -> None:
    assert exit_code_from_status(exited(0)) == 0
    assert exit_code_from_status(exited(7)) == 7
    assert exit_code_from_status(killed(signal.SIGTERM)) == 128 + signal.SIGTERM


@pytest.mark.parametrize(
    "order", list(itertools.permutations([GATEWAY, PRODUCER, CONSUMER]))
)
def test_consumer_status_wins_in_any_order(order) -> None:
    statuses = {GATEWAY: exited(9), PRODUCER: exited(1), CONSUMER: exited(4)}
    connection = FakeConnection()
    tracker = make_tracker(
        [GATEWAY, PRODUCER, CONSUMER],
        [(PIDS[role], statuses[role]) for role in order],
        connection,
    )

    result = tracker.wait_all()

    assert result.exit_status == 4
    assert result.statuses == {GATEWAY: 9, PRODUCER: 1, CONSUMER: 4}
    assert sorted(connection.calls) == ["read", "write"]
    assert tracker.outstanding == 0


def test_producer_only_reports_gateway_status() -> None:
    connection = FakeConnection()
    tracker = make_tracker(
        [GATEWAY, PRODUCER],
        [(PIDS[PRODUCER], exited(0)), (PIDS[GATEWAY], exited(3))],
        connection,
    )

    result = tracker.wait_all()

    assert result.exit_status == 3
    assert connection.calls == ["write"]


def test_consumer_only_reports_consumer_signal() -> None:
    connection = FakeConnection()
    tracker = make_tracker(
        [GATEWAY, CONSUMER],
        [(PIDS[GATEWAY], exited(0)), (PIDS[CONSUMER], killed(signal.SIGPIPE))],
        connection,
    )

    result = tracker.wait_all()

    assert result.exit_status == 128 + signal.SIGPIPE
    assert connection.calls == ["read"]


def test_gateway_completion_never_closes_a_direction() -> None:
    connection = FakeConnection()
    tracker = make_tracker([GATEWAY, PRODUCER, CONSUMER], [], connection)

    tracker.record_completion(PIDS[GATEWAY], exited(0))

    assert connection.calls == []
    assert tracker.outstanding == 2


def test_untracked_and_repeated_completions_are_ignored() -> None:
    connection = FakeConnection()
    tracker = make_tracker(
        [GATEWAY, PRODUCER],
        [
            (999, exited(0)),
            (PIDS[PRODUCER], exited(0)),
            (PIDS[PRODUCER], exited(0)),
            (PIDS[GATEWAY], exited(0)),
        ],
        connection,
    )

    tracker.wait_all()

    assert connection.calls == ["write"]


def test_reaped_child_handle_is_marked_done() -> None:
    tracker = make_tracker([GATEWAY, CONSUMER], [])

    child = tracker.record_completion(PIDS[CONSUMER], exited(2))

    assert child is not None
    assert child.exit_status == 2
    assert child.process.returncode == 2


def test_wait_failure_raises_wait_error() -> None:
    tracker = make_tracker([GATEWAY, PRODUCER], [(PIDS[PRODUCER], exited(0))])

    with pytest.raises(WaitError, match="wait failed"):
        tracker.wait_all()


def test_shutdown_failure_is_fatal() -> None:
    tracker = make_tracker(
        [GATEWAY, PRODUCER],
        [(PIDS[PRODUCER], exited(0)), (PIDS[GATEWAY], exited(0))],
        FakeConnection(fail=True),
    )

    with pytest.raises(SocketError, match="SHUT_WR"):
        tracker.wait_all()


def test_data_role_without_connection_is_an_error() -> None:
    tracker = LifecycleTracker(LOGGER, waiter=scripted_waiter([]))
    tracker.track(ChildProcess(PRODUCER, SimpleNamespace(pid=5, returncode=None)))

    with pytest.raises(WaitError):
        tracker.record_completion(5, exited(0))


def test_terminate_all_skips_finished_children() -> None:
    terminated: list[int] = []

    def fake_proc(pid: int) -> SimpleNamespace:
        return SimpleNamespace(
            pid=pid,
            returncode=None,
            poll=lambda: None,
            terminate=lambda: terminated.append(pid),
            wait=lambda timeout=None: 0,
        )

    tracker = LifecycleTracker(LOGGER, FakeConnection(), waiter=scripted_waiter([]))
    tracker.track(ChildProcess(GATEWAY, fake_proc(1)))
    tracker.track(ChildProcess(PRODUCER, fake_proc(2)))
    tracker.record_completion(2, exited(0))

    tracker.terminate_all()

    assert terminated == [1]
