import io
import os
import sys

import pytest

from slipgate.readline import Interrupted, LineEditor, flush_stdin, read_line


def edit(data: bytes, prompt: str = "> "):
    stream = iter(data)
    out: list[str] = []

    def read_byte() -> int:
        try:
            return next(stream)
        except StopIteration:
            raise EOFError from None

    result = LineEditor(prompt, read_byte, out.append).run()
    return result, "".join(out)


def test_plain_line_is_echoed():
    result, output = edit(b"hello\r")
    assert result == "hello"
    assert output == "> hello\r\n"


def test_newline_also_ends_line():
    result, _ = edit(b"abc\n")
    assert result == "abc"


def test_backspace_removes_previous_char():
    assert edit(b"abc\x7f\r")[0] == "ab"
    assert edit(b"abc\x08\r")[0] == "ab"


def test_backspace_at_start_does_nothing():
    assert edit(b"\x7fab\r")[0] == "ab"


def test_left_arrow_then_insert():
    assert edit(b"ac\x1b[Db\r")[0] == "abc"


def test_right_arrow_moves_back_to_end():
    assert edit(b"ab\x1b[D\x1b[Cc\r")[0] == "abc"


def test_ctrl_a_home_then_insert():
    result, output = edit(b"bc\x01a\r")
    assert result == "abc"
    assert "\x1b[3G" in output


def test_home_and_end_sequences():
    assert edit(b"bc\x1b[Ha\x1b[Fd\r")[0] == "abcd"
    assert edit(b"bc\x1b[1~a\x1b[4~d\r")[0] == "abcd"
    assert edit(b"bc\x01a\x05d\r")[0] == "abcd"


def test_ctrl_k_clears_to_end():
    assert edit(b"abcd\x1b[D\x1b[D\x0b\r")[0] == "ab"


def test_ctrl_u_clears_to_start():
    assert edit(b"abcd\x1b[D\x1b[D\x15\r")[0] == "cd"


def test_delete_key_removes_under_cursor():
    assert edit(b"abc\x01\x1b[3~\r")[0] == "bc"


def test_unknown_csi_sequence_is_consumed():
    assert edit(b"a\x1b[99;1ub\r")[0] == "ab"


def test_non_printable_bytes_ignored():
    assert edit(b"a\x07b\xffc\r")[0] == "abc"


def test_ctrl_c_interrupts():
    with pytest.raises(Interrupted):
        edit(b"abc\x03")


def test_ctrl_d_on_empty_line_interrupts():
    with pytest.raises(Interrupted):
        edit(b"\x04")


def test_ctrl_d_with_text_is_ignored():
    assert edit(b"ab\x04\r")[0] == "ab"


def test_end_of_input_raises():
    with pytest.raises(EOFError):
        edit(b"abc")


def test_read_line_simple_mode_sanitizes(monkeypatch, capsys):
    monkeypatch.setenv("SLIPGATE_SIMPLE_PROMPT", "1")
    monkeypatch.setattr(sys, "stdin", io.StringIO("hi\x01 there\r\n"))
    assert read_line("Name: ") == "hi there"
    assert capsys.readouterr().out == "Name: "


def test_read_line_without_newline_is_eof(monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.StringIO("partial"))
    with pytest.raises(EOFError):
        read_line("> ")


def test_flush_stdin_drains_pending_bytes(monkeypatch):
    read_fd, write_fd = os.pipe()
    os.write(write_fd, b"pending")
    os.close(write_fd)
    with os.fdopen(read_fd, "r") as stream:
        monkeypatch.setattr(sys, "stdin", stream)
        result = flush_stdin()
        remaining = os.read(read_fd, 100)
    expected = b"" if sys.platform.startswith("linux") else b"pending"
    assert result is None
    assert remaining == expected