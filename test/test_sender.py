from typing import List

import pytest

from ground_station.serial_link.config import LinkConfig
from ground_station.serial_link.errors import DeliveryFailure, TransportError
from ground_station.serial_link.messages import (
    add_waypoint_message,
    send_rover_to_message,
    set_setting_message,
    sync_message,
    telemetry_message,
)
from ground_station.serial_link.protocol import encode, message_checksum
from ground_station.serial_link.sender import ConfirmationTracker, MessageSender
from ground_station.serial_link.telemetry import Channel


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Wire:
    def __init__(self) -> None:
        self.frames: List[bytes] = []
        self.fail = False

    def write(self, frame: bytes) -> None:
        if self.fail:
            raise TransportError("unplugged")
        self.frames.append(frame)


def make_sender(max_retries: int = 3):
    clock = FakeClock()
    wire = Wire()
    config = LinkConfig(retry_interval_s=0.5, max_retries=max_retries)
    sender = MessageSender(wire.write, config, clock)
    failures: List[DeliveryFailure] = []
    sender.add_failure_listener(failures.append)
    return sender, wire, clock, failures


def test_confirmed_message_is_tracked_until_acknowledged() -> None:
    sender, wire, _, _ = make_sender()
    message = send_rover_to_message(3)

    checksum = sender.send(message)

    assert wire.frames == [encode(message)]
    assert checksum == message_checksum(message)
    assert checksum in sender.tracker
    assert sender.on_confirmation_received(checksum) is True
    assert len(sender.tracker) == 0


def test_unconfirmed_types_are_not_tracked() -> None:
    sender, wire, _, _ = make_sender()

    sender.send(sync_message())
    sender.send(telemetry_message(Channel.SPEED, 1.0))

    assert len(wire.frames) == 2
    assert len(sender.tracker) == 0


def test_unmatched_confirmation_is_ignored() -> None:
    sender, _, _, _ = make_sender()
    checksum = sender.send(send_rover_to_message(1))

    assert sender.on_confirmation_received(checksum ^ 0xFFFF) is False
    assert checksum in sender.tracker


def test_retries_then_reports_exactly_one_failure() -> None:
    sender, wire, clock, failures = make_sender(max_retries=3)
    message = add_waypoint_message(0, 47.0, 8.0, 10)
    sender.send(message)

    for _ in range(3):
        clock.advance(0.6)
        assert sender.sweep() == []
    assert sender.retransmits == 3
    assert wire.frames == [encode(message)] * 4

    clock.advance(0.6)
    reported = sender.sweep()

    assert len(reported) == 1
    assert failures == reported
    assert failures[0].message == message
    assert failures[0].attempts == 4
    assert len(sender.tracker) == 0

    clock.advance(5.0)
    assert sender.sweep() == []
    assert len(failures) == 1
    assert len(wire.frames) == 4


def test_sweep_leaves_fresh_entries_alone() -> None:
    sender, wire, clock, _ = make_sender()
    sender.send(send_rover_to_message(0))

    clock.advance(0.2)
    sender.sweep()

    assert len(wire.frames) == 1
    assert sender.retransmits == 0


def test_confirmation_during_retries_stops_them() -> None:
    sender, wire, clock, failures = make_sender()
    checksum = sender.send(send_rover_to_message(0))

    clock.advance(0.6)
    sender.sweep()
    sender.on_confirmation_received(checksum)
    clock.advance(10.0)
    sender.sweep()

    assert len(wire.frames) == 2
    assert failures == []


def test_discard_pending_drops_without_failure() -> None:
    sender, wire, clock, failures = make_sender()
    sender.send(send_rover_to_message(0))
    sender.send(set_setting_message(1, 2.0))

    assert sender.discard_pending() == 2
    clock.advance(10.0)
    sender.sweep()

    assert failures == []
    assert len(wire.frames) == 2


def test_write_failure_leaves_no_pending_entry() -> None:
    sender, wire, _, _ = make_sender()
    wire.fail = True

    with pytest.raises(TransportError):
        sender.send(send_rover_to_message(5))

    assert len(sender.tracker) == 0


def test_failing_failure_listener_does_not_block_others() -> None:
    sender, _, clock, failures = make_sender(max_retries=0)

    def broken(failure: DeliveryFailure) -> None:
        raise RuntimeError("boom")

    seen: List[DeliveryFailure] = []
    sender.add_failure_listener(broken)
    sender.add_failure_listener(seen.append)
    sender.send(send_rover_to_message(0))

    clock.advance(0.6)
    sender.sweep()

    assert len(failures) == 1
    assert len(seen) == 1
    assert seen[0].attempts == 1


def test_tracker_expire_stamps_resends() -> None:
    tracker = ConfirmationTracker()
    message = send_rover_to_message(9)
    tracker.register(message, 0x1234, now=0.0)

    resend, failed = tracker.expire(1.0, retry_interval_s=0.5, max_retries=1)
    assert [entry.retries for entry in resend] == [1]
    assert failed == []
    assert tracker.pending()[0].sent_at == 1.0

    resend, failed = tracker.expire(1.2, retry_interval_s=0.5, max_retries=1)
    assert resend == [] and failed == []

    resend, failed = tracker.expire(1.6, retry_interval_s=0.5, max_retries=1)
    assert resend == []
    assert [entry.checksum for entry in failed] == [0x1234]
    assert 0x1234 not in tracker


def test_colliding_commands_are_tracked_separately(monkeypatch) -> None:
    monkeypatch.setattr("ground_station.serial_link.sender.message_checksum", lambda message: 0xA707)
    sender, wire, clock, failures = make_sender(max_retries=1)
    first = set_setting_message(0, 511.0)
    second = set_setting_message(1, 8.0)

    sender.send(first)
    sender.send(second)
    assert len(sender.tracker) == 2

    for _ in range(5):
        clock.advance(0.6)
        sender.sweep()

    assert sorted(failure.message.payload for failure in failures) == sorted([first.payload, second.payload])
    assert all(failure.attempts == 2 for failure in failures)
    assert len(wire.frames) == 4


def test_colliding_confirmation_resolves_oldest_only(monkeypatch) -> None:
    monkeypatch.setattr("ground_station.serial_link.sender.message_checksum", lambda message: 0x0101)
    sender, _, clock, failures = make_sender(max_retries=0)
    sender.send(send_rover_to_message(1))
    sender.send(send_rover_to_message(2))

    assert sender.on_confirmation_received(0x0101) is True
    clock.advance(0.6)
    sender.sweep()

    assert [failure.message for failure in failures] == [send_rover_to_message(2)]


def test_identical_resend_refreshes_entry() -> None:
    sender, _, clock, failures = make_sender(max_retries=0)
    message = send_rover_to_message(4)

    sender.send(message)
    clock.advance(0.4)
    sender.send(message)
    clock.advance(0.4)
    sender.sweep()

    assert len(sender.tracker) == 1
    assert failures == []


def test_write_failure_keeps_colliding_entry(monkeypatch) -> None:
    monkeypatch.setattr("ground_station.serial_link.sender.message_checksum", lambda message: 0x0202)
    sender, wire, _, _ = make_sender()
    sender.send(send_rover_to_message(1))
    wire.fail = True

    with pytest.raises(TransportError):
        sender.send(send_rover_to_message(2))

    assert [entry.message for entry in sender.tracker.pending()] == [send_rover_to_message(1)]
