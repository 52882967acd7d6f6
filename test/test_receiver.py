from typing import List, Tuple

from ground_station.serial_link.messages import (
    MajorType,
    Message,
    SettingsSubtype,
    add_waypoint_message,
    confirmation_message,
    setting_report_message,
    state_message,
    string_message,
    sync_message,
    telemetry_message,
)
from ground_station.serial_link.protocol import encode, message_checksum
from ground_station.serial_link.receiver import FrameParser, LinkReceiver, ReceiverState, decode_stream_chunks
from ground_station.serial_link.telemetry import Channel, TelemetryRegistry


def make_receiver(**handlers) -> Tuple[LinkReceiver, TelemetryRegistry]:
    registry = TelemetryRegistry()
    return LinkReceiver(registry, **handlers), registry


def test_heading_frame_with_trailing_garbage() -> None:
    receiver, registry = make_receiver()
    published: List[float] = []
    registry.register_listener(Channel.HEADING, published.append)

    # 0xFF is SETTINGS/3 with length 15: not a known header.
    stream = encode(telemetry_message(Channel.HEADING, 87.5)) + b"\xFF"
    messages = receiver.feed(stream)

    assert len(messages) == 1
    assert published == [87.5]
    assert registry.get(Channel.HEADING) == 87.5
    assert receiver.parser.dropped_bytes == 1
    assert receiver.parser.buffered == 0
    assert receiver.state is ReceiverState.SEEKING_HEADER


def test_parser_resync_after_corrupt_frame() -> None:
    parser = FrameParser()
    frame1 = encode(telemetry_message(Channel.SPEED, 4.0))
    frame2 = encode(telemetry_message(Channel.VOLTAGE, 11.5))

    corrupted = bytearray(frame1)
    corrupted[3] ^= 0x10
    out = parser.feed(bytes(corrupted) + frame2)

    assert out == [telemetry_message(Channel.VOLTAGE, 11.5)]
    assert parser.crc_error_frames >= 1
    assert parser.dropped_bytes >= len(frame1)


def test_parser_resyncs_one_byte_past_rejected_header() -> None:
    parser = FrameParser()
    valid = encode(sync_message())
    # A plausible telemetry header whose claimed span swallows the following sync frame.
    bogus_header = bytes([encode(telemetry_message(Channel.ROLL, 0.0))[0]])
    stream = bogus_header + valid + b"\x00\x00\x00\x00"

    out = parser.feed(stream)

    assert sync_message() in out
    assert parser.crc_error_frames >= 1


def test_parser_waits_for_partial_frame() -> None:
    parser = FrameParser()
    frame = encode(add_waypoint_message(0, 1.0, 2.0, 3))

    assert parser.feed(frame[:5]) == []
    assert parser.state is ReceiverState.READING_PAYLOAD
    assert parser.feed(frame[5:]) == [add_waypoint_message(0, 1.0, 2.0, 3)]
    assert parser.state is ReceiverState.SEEKING_HEADER


def test_parser_byte_at_a_time() -> None:
    frames = [
        encode(telemetry_message(Channel.LATITUDE, 45.0)),
        encode(state_message(1, 2)),
        encode(confirmation_message(0x0102)),
    ]
    stream = b"".join(frames)

    out = decode_stream_chunks(stream[i : i + 1] for i in range(len(stream)))

    assert out == [
        telemetry_message(Channel.LATITUDE, 45.0),
        state_message(1, 2),
        confirmation_message(0x0102),
    ]


def test_stream_without_valid_header_never_dispatches() -> None:
    receiver, registry = make_receiver()
    calls: List[float] = []
    for channel in Channel:
        registry.register_listener(channel, calls.append)

    receiver.feed(bytes([0xFF, 0xFE, 0xF0, 0x3F]) * 50)

    assert calls == []
    assert receiver.frames_ok == 0


def test_state_frame_dispatches_raw_pair() -> None:
    states: List[Tuple[int, int]] = []
    receiver, _ = make_receiver(on_state=lambda state, substate: states.append((state, substate)))

    receiver.feed(encode(state_message(3, 0x03)))

    assert states == [(3, 0x03)]


def test_confirmation_frame_forwards_echoed_checksum() -> None:
    acks: List[int] = []
    receiver, _ = make_receiver(on_confirmation=acks.append)

    receiver.feed(encode(confirmation_message(0xCAFE)))

    assert acks == [0xCAFE]


def test_sync_text_and_setting_dispatch() -> None:
    events: list = []
    receiver, _ = make_receiver(
        on_sync=lambda: events.append("sync"),
        on_text=lambda text: events.append(text),
        on_setting=lambda index, value: events.append((index, value)),
    )

    receiver.feed(encode(sync_message()) + encode(string_message("Obstacle")) + encode(setting_report_message(4, 2.5)))

    assert events == ["sync", "Obstacle", (4, 2.5)]


def test_command_echo_forwarded_and_acknowledged() -> None:
    commands: List[Message] = []
    acks: List[int] = []
    receiver, _ = make_receiver(on_command=commands.append, on_confirm_request=acks.append)
    message = add_waypoint_message(2, 3.0, 4.0)

    receiver.feed(encode(message))

    assert commands == [message]
    assert acks == [message_checksum(message)]


def test_poll_setting_goes_to_command_consumer() -> None:
    commands: List[Message] = []
    receiver, _ = make_receiver(on_command=commands.append)

    receiver.feed(encode(Message(MajorType.SETTINGS, SettingsSubtype.POLL, b"\x01")))

    assert commands[0].subtype == SettingsSubtype.POLL


def test_failing_handler_does_not_stop_following_frames() -> None:
    def broken(state: int, substate: int) -> None:
        raise RuntimeError("boom")

    receiver, registry = make_receiver(on_state=broken)

    receiver.feed(encode(state_message(0, 1)) + encode(telemetry_message(Channel.SPEED, 2.0)))

    assert registry.get(Channel.SPEED) == 2.0
    assert receiver.frames_ok == 2


def test_unknown_channel_is_dropped() -> None:
    receiver, registry = make_receiver()

    receiver.feed(encode(telemetry_message(200, 1.0)))

    assert all(value == 0.0 for value in registry.snapshot().values())


def test_zero_byte_run_is_not_a_sync_frame() -> None:
    syncs: List[bool] = []
    receiver, _ = make_receiver(on_sync=lambda: syncs.append(True))

    receiver.feed(b"\x00" * 12)

    assert syncs == []
    assert receiver.frames_ok == 0
    assert receiver.parser.crc_error_frames > 0


def test_sync_frame_after_zero_run_is_found() -> None:
    syncs: List[bool] = []
    receiver, _ = make_receiver(on_sync=lambda: syncs.append(True))

    receiver.feed(b"\x00" * 7 + encode(sync_message()))

    assert syncs == [True]
