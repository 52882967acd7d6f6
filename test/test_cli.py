import pytest

from ground_station.serial_link import cli
from ground_station.serial_link.__main__ import main


def test_arg_parser_defaults() -> None:
    args = cli.build_arg_parser().parse_args([])

    assert args.port is None
    assert args.telemetry_log is None
    assert args.list_ports is False


def test_list_ports_flag_prints_and_exits(monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "list_ports", lambda: [{"device": "/dev/ttyACM0", "description": "Arduino Uno"}])

    assert main(["--list-ports"]) == 0

    assert "/dev/ttyACM0  Arduino Uno" in capsys.readouterr().out


def test_list_ports_flag_without_ports(monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "list_ports", lambda: [])

    assert main(["--list-ports"]) == 0

    assert "(no serial ports found)" in capsys.readouterr().out


def test_parse_on_off() -> None:
    assert cli._parse_on_off("on") is True
    assert cli._parse_on_off("off") is False
    with pytest.raises(ValueError):
        cli._parse_on_off("maybe")
