import re

import pytest

from scutdrcom.tracelog import (
    LogLevel,
    LogType,
    TraceLog,
    char_column,
    hex_column,
    hexdump_lines,
)


@pytest.fixture
def log(tmp_path):
    return TraceLog(tmp_path / "client.log", LogLevel.INF, 102400)


def test_hex_column_eight_bytes():
    assert hex_column(bytes(range(8))) == "00 01 02 03 04 05 06 07  "


def test_hex_column_full_row_width():
    assert len(hex_column(bytes(range(16)))) == 49


def test_hex_column_short_row():
    text = hex_column(b"\xab\xcd")
    assert text.split() == ["ab", "cd"]


def test_char_column_masks_unprintable():
    assert char_column(b"AB\x00") == "AB."


def test_char_column_truncates_to_sixteen():
    assert len(char_column(b"x" * 40)) == 16


def test_hexdump_lines_offsets():
    lines = list(hexdump_lines(bytes(20)))
    assert len(lines) == 2
    assert lines[0].startswith("00000000 ")
    assert lines[1].startswith("00000010 ")
    assert lines[0].endswith("|")


def test_write_format_and_file(log, capsys):
    line = log.write(LogType.DOT1X, LogLevel.INF, "hello")
    assert re.fullmatch(
        r"\[\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\]\[8021X\]\[INF\]:\[hello\]", line
    )
    assert log.path.read_text() == line + "\n"
    assert capsys.readouterr().out == line + "\n"


def test_write_filtered_by_level(log):
    assert log.write(LogType.ALL, LogLevel.DEBUG, "quiet") is None
    assert not log.path.exists()


def test_rotation(tmp_path):
    log = TraceLog(tmp_path / "small.log", LogLevel.INF, 10)
    log.path.write_text("x" * 50)
    log.write(LogType.INIT, LogLevel.ERROR, "after")
    assert log.backup_path.read_text() == "x" * 50
    assert "after" in log.path.read_text()


def test_hexdump_debug_only_length(log):
    log.level = LogLevel.DEBUG
    log.hexdump(LogType.DRCOM, "Packet sent", bytes(40))
    lines = log.path.read_text().splitlines()
    assert len(lines) == 1
    assert "Packet sent: Packet length: 40 bytes." in lines[0]


def test_hexdump_trace_dumps_rows(log):
    log.level = LogLevel.TRACE
    log.hexdump(LogType.DRCOM, "Packet received", bytes(33))
    lines = log.path.read_text().splitlines()
    # length line, two rules and three rows
    assert len(lines) == 6
    assert "[TRACE]" in lines[2]


def test_hexdump_silent_at_info(log):
    log.hexdump(LogType.DRCOM, "Packet sent", bytes(4))
    assert not log.path.exists()