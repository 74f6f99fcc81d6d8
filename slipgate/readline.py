"""Terminal line input with basic in-line editing."""

from __future__ import annotations

import os
import signal
import sys
from typing import Callable

try:
    import fcntl
    import termios
    import tty
except ImportError:  # non-POSIX platforms fall back to plain line reads
    fcntl = None  # type: ignore[assignment]
    termios = None  # type: ignore[assignment]
    tty = None  # type: ignore[assignment]

_IS_LINUX = sys.platform.startswith("linux")
_SIMPLE_PROMPT_ENV = "SLIPGATE_SIMPLE_PROMPT"

_CTRL_A = 1
_CTRL_C = 3
_CTRL_D = 4
_CTRL_E = 5
_BACKSPACE = 8
_CTRL_K = 11
_CTRL_U = 21
_ESC = 27
_DEL = 127


class Interrupted(Exception):
    """The user aborted input with Ctrl-C or Ctrl-D."""

    def __init__(self, message: str = "interrupted") -> None:
        super().__init__(message)


def _printable(text: str) -> str:
    return "".join(ch for ch in text if 0x20 <= ord(ch) < 0x7F)


class LineEditor:
    """Reads one line from a raw terminal byte stream, echoing and editing it.

    ``read_byte`` returns the next input byte as an int and raises EOFError at
    the end of input; ``write`` receives the terminal output as text.
    """

    def __init__(
        self,
        prompt: str,
        read_byte: Callable[[], int],
        write: Callable[[str], object],
    ) -> None:
        self.prompt = prompt
        self._read_byte = read_byte
        self._write = write
        self._buf: list[str] = []
        self._pos = 0

    def run(self) -> str:
        """Print the prompt and edit a line until Enter; return the line."""
        self._write(self.prompt)
        while True:
            b = self._read_byte()
            if b in (ord("\r"), ord("\n")):
                self._write("\r\n")
                return "".join(self._buf)
            if b == _CTRL_C:
                self._write("\r\n")
                raise Interrupted()
            if b == _CTRL_D:
                if not self._buf:
                    self._write("\r\n")
                    raise Interrupted()
            elif b in (_DEL, _BACKSPACE):
                if self._pos > 0:
                    del self._buf[self._pos - 1]
                    self._pos -= 1
                    self._refresh()
            elif b == _ESC:
                self._escape()
            elif b == _CTRL_A:
                self._home()
            elif b == _CTRL_E:
                self._end()
            elif b == _CTRL_U:
                del self._buf[: self._pos]
                self._pos = 0
                self._refresh()
            elif b == _CTRL_K:
                del self._buf[self._pos:]
                self._refresh()
            elif 0x20 <= b < 0x7F:
                self._insert(chr(b))

    def _escape(self) -> None:
        if self._read_byte() != ord("["):
            return
        code = self._read_byte()
        key = chr(code)
        if key == "D":
            if self._pos > 0:
                self._pos -= 1
                self._write("\x1b[D")
        elif key == "C":
            if self._pos < len(self._buf):
                self._pos += 1
                self._write("\x1b[C")
        elif key == "H":
            self._home()
        elif key == "F":
            self._end()
        elif key == "3":
            self._read_byte()  # trailing '~'
            if self._pos < len(self._buf):
                del self._buf[self._pos]
                self._refresh()
        elif key == "1":
            self._read_byte()
            self._home()
        elif key == "4":
            self._read_byte()
            self._end()
        elif code < 0x40:
            # Skip the rest of an unknown CSI sequence up to its final byte.
            while not 0x40 <= self._read_byte() <= 0x7E:
                pass

    def _insert(self, ch: str) -> None:
        self._buf.insert(self._pos, ch)
        self._pos += 1
        if self._pos == len(self._buf):
            self._write(ch)
        else:
            self._refresh()

    def _home(self) -> None:
        self._pos = 0
        self._set_column(len(self.prompt) + 1)

    def _end(self) -> None:
        self._pos = len(self._buf)
        self._set_column(len(self.prompt) + len(self._buf) + 1)

    def _refresh(self) -> None:
        self._write("\r" + self.prompt + "".join(self._buf) + "\x1b[K")
        self._set_column(len(self.prompt) + self._pos + 1)

    def _set_column(self, column: int) -> None:
        self._write(f"\x1b[{column}G")


def _write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _stdin_fd() -> int | None:
    try:
        return sys.stdin.fileno()
    except (OSError, ValueError, AttributeError):
        return None


def _ignore_background_signals() -> None:
    """Keep background terminal I/O from stopping the process (sudo use_pty)."""
    for name in ("SIGTTOU", "SIGTTIN"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            signal.signal(signum, signal.SIG_IGN)
        except (ValueError, OSError):
            pass


def _claim_terminal_foreground(fd: int) -> None:
    """Make this process group the terminal's foreground group, if possible."""
    if not _IS_LINUX:
        return
    try:
        os.tcsetpgrp(fd, os.getpgrp())
    except OSError:
        pass


def _read_simple() -> str:
    line = sys.stdin.readline()
    if not line.endswith("\n"):
        raise EOFError("end of input")
    return _printable(line.rstrip("\r\n"))


def _fd_byte_reader(fd: int) -> Callable[[], int]:
    def read_byte() -> int:
        data = os.read(fd, 1)
        if not data:
            raise EOFError("end of input")
        return data[0]

    return read_byte


def _exit_interrupted(signum: int, frame: object) -> None:
    raise SystemExit(130)


def read_line(prompt: str) -> str:
    """Print ``prompt`` and read one line, with editing on a terminal."""
    _ignore_background_signals()
    fd = _stdin_fd()
    if (
        os.environ.get(_SIMPLE_PROMPT_ENV) == "1"
        or fd is None
        or termios is None
        or not os.isatty(fd)
    ):
        _write(prompt)
        return _read_simple()

    _claim_terminal_foreground(fd)
    try:
        saved = termios.tcgetattr(fd)
        tty.setraw(fd)
    except termios.error:
        _write(prompt)
        return _read_simple()

    previous: dict[int, object] = {}
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, _exit_interrupted)
            except ValueError:
                pass
        return LineEditor(prompt, _fd_byte_reader(fd), _write).run()
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        for signum, handler in previous.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]


def flush_stdin() -> None:
    """Discard any unread bytes pending on stdin (Linux only)."""
    if not _IS_LINUX or fcntl is None:
        return
    fd = _stdin_fd()
    if fd is None:
        return
    _ignore_background_signals()
    _claim_terminal_foreground(fd)
    try:
        flags = fcntl.fcntl(fd, fcntl.F_GETFL)
        fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
    except OSError:
        return
    try:
        while True:
            try:
                chunk = os.read(fd, 4096)
            except OSError:
                break
            if not chunk:
                break
    finally:
        try:
            fcntl.fcntl(fd, fcntl.F_SETFL, flags)
        except OSError:
            pass