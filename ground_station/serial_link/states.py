from __future__ import annotations

from enum import IntEnum, IntFlag


class StateType(IntEnum):
    APM = 0
    DRIVE = 1
    AUTO = 2
    FLAGS = 3


class ApmState(IntEnum):
    INIT = 0
    SELF_TEST = 1
    DRIVE = 2


class DriveState(IntEnum):
    STOP = 0
    AUTO = 1
    RADIO = 2


class AutoState(IntEnum):
    FULL = 0
    AVOID = 1
    STALLED = 2


class AutoFlag(IntFlag):
    NONE = 0
    CAUTION = 1 << 0
    APPROACH = 1 << 1


_LABELS = {
    StateType.APM: "APM",
    StateType.DRIVE: "DRV",
    StateType.AUTO: "AUT",
    StateType.FLAGS: "FLG",
}

# Keyed per state type: substate values overlap between state types.
_SUBSTATE_TEXT = {
    StateType.APM: {ApmState.INIT: "Init", ApmState.SELF_TEST: "Self Test", ApmState.DRIVE: "Driving"},
    StateType.DRIVE: {DriveState.STOP: "Stopped", DriveState.AUTO: "Auto", DriveState.RADIO: "Manual"},
    StateType.AUTO: {AutoState.FULL: "Full", AutoState.AVOID: "Avoid", AutoState.STALLED: "Stalled"},
}


def decode_flags(substate: int) -> AutoFlag:
    return AutoFlag(substate & (AutoFlag.CAUTION | AutoFlag.APPROACH))


def describe_state(state: int, substate: int) -> str:
    """Human-readable text for a raw (state, substate) pair, e.g. ``DRV - Auto``."""
    try:
        kind = StateType(state)
    except ValueError:
        return f"Unknown state {state}/{substate}"

    label = _LABELS[kind]
    if kind is StateType.FLAGS:
        flags = decode_flags(substate)
        if flags == AutoFlag.CAUTION | AutoFlag.APPROACH:
            return f"{label} - App. & Caut."
        if flags & AutoFlag.APPROACH:
            return f"{label} - Approach"
        if flags & AutoFlag.CAUTION:
            return f"{label} - Caution"
        return f"{label} - None"

    text = _SUBSTATE_TEXT[kind].get(substate)
    if text is None:
        return f"{label} - Unknown"
    return f"{label} - {text}"
