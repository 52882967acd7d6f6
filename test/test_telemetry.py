from typing import List

import pytest

from ground_station.serial_link.states import AutoFlag, decode_flags, describe_state
from ground_station.serial_link.telemetry import Channel, RollingAverage, TelemetryRegistry, channel_from_id


def test_listeners_called_in_registration_order() -> None:
    registry = TelemetryRegistry()
    calls: List[str] = []
    registry.register_listener(Channel.SPEED, lambda value: calls.append(f"a:{value}"))
    registry.register_listener(Channel.SPEED, lambda value: calls.append(f"b:{value}"))

    registry.publish(Channel.SPEED, 3.0)

    assert calls == ["a:3.0", "b:3.0"]
    assert registry.get(Channel.SPEED) == 3.0


def test_failing_listener_does_not_block_the_rest() -> None:
    registry = TelemetryRegistry()
    seen: List[float] = []

    def broken(value: float) -> None:
        raise RuntimeError("boom")

    registry.register_listener(Channel.VOLTAGE, broken)
    registry.register_listener(Channel.VOLTAGE, seen.append)

    registry.publish(Channel.VOLTAGE, 12.1)

    assert seen == [pytest.approx(12.1)]


def test_listeners_are_per_channel() -> None:
    registry = TelemetryRegistry()
    seen: List[float] = []
    registry.register_listener(Channel.PITCH, seen.append)

    registry.publish(Channel.ROLL, 90.0)

    assert seen == []


def test_reset_restores_neutral_values() -> None:
    registry = TelemetryRegistry()
    registry.publish(Channel.LATITUDE, 45.5)

    registry.reset()

    assert registry.get(Channel.LATITUDE) == 0.0
    assert set(registry.snapshot()) == {channel.name for channel in Channel}


def test_rolling_average_window() -> None:
    average = RollingAverage(4)
    for value in (8, 8, 9, 9):
        average(value)

    assert average.value == pytest.approx(8.5)
    assert average.rounded() == 9

    average(1)
    assert average.value == pytest.approx((8 + 9 + 9 + 1) / 4)

    with pytest.raises(ValueError):
        RollingAverage(0)


def test_channel_from_id() -> None:
    assert channel_from_id(2) is Channel.HEADING
    assert channel_from_id(99) is None


@pytest.mark.parametrize(
    "state, substate, text",
    [
        (0, 1, "APM - Self Test"),
        (1, 1, "DRV - Auto"),
        (1, 2, "DRV - Manual"),
        (2, 2, "AUT - Stalled"),
        (3, 0, "FLG - None"),
        (3, 1, "FLG - Caution"),
        (3, 2, "FLG - Approach"),
        (3, 3, "FLG - App. & Caut."),
        (0, 9, "APM - Unknown"),
        (7, 1, "Unknown state 7/1"),
    ],
)
def test_describe_state(state: int, substate: int, text: str) -> None:
    assert describe_state(state, substate) == text


def test_decode_flags_ignores_unknown_bits() -> None:
    assert decode_flags(0xF2) == AutoFlag.APPROACH
