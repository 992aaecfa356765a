"""Agent log files: dated rotation, duplicate suppression, cleanup and remote reading."""

from __future__ import annotations

import enum
import inspect
import os
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, TextIO, Union

HOOK_LOG = "whatap-hook.log"
DOTNET_LOG = "dotnet-profiler.log"
LAST_LOG_MAX = 1000
LOG_FILES_MAX = 100
CLEAR_INTERVAL_MS = 60 * 1000
ROTATE_INTERVAL = 10.0

# Application type codes whose logs live under WHATAP_DOTNET_HOME.
DOTNET_APP_TYPES: frozenset = frozenset()

_RED = "\x1b[31m"
_RESET = "\x1b[0m"


class LogLevel(enum.IntEnum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


@dataclass(frozen=True)
class LogData:
    """A slice of a log file: where it starts, where to read next, and its text."""

    before: int
    next: int
    text: str


def log_home(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return the directory that holds the ``logs`` folder."""
    if environ is None:
        environ = os.environ
    home = environ.get("WHATAP_HOME", "") or "."
    app_type = environ.get("WHATAP_APP_TYPE", "")
    if app_type:
        try:
            code = int(app_type)
        except ValueError:
            code = None
        if code is not None and code in DOTNET_APP_TYPES:
            dotnet_home = environ.get("WHATAP_DOTNET_HOME", "")
            if dotnet_home:
                home = dotnet_home
    return home


def _sprint(args: tuple) -> str:
    """Join operands, putting a space between two neighbours that are not strings."""
    parts = []
    previous_is_str = True
    for index, arg in enumerate(args):
        is_str = isinstance(arg, str)
        if index > 0 and not is_str and not previous_is_str:
            parts.append(" ")
        parts.append(str(arg))
        previous_is_str = is_str
    return "".join(parts)


def _caller() -> Optional[inspect.FrameInfo]:
    frame = inspect.currentframe()
    try:
        while frame is not None and frame.f_code.co_filename == __file__:
            frame = frame.f_back
        if frame is None:
            return None
        return inspect.getframeinfo(frame, context=0)
    finally:
        del frame


class FileLog:
    """An append-only log file whose lines carry a millisecond timestamp."""

    def __init__(self, filename: Union[str, os.PathLike],
                 clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        try:
            self.out: Optional[TextIO] = open(filename, "a", encoding="utf-8")
        except OSError as exc:
            print(f"WA100011 Open File Error {exc}", file=sys.stderr)
            self.out = None

    def println(self, message: str) -> None:
        if self.out is None:
            return
        self.out.write(f"{int(self._clock() * 1000)} {message}")
        self.out.flush()

    def close(self) -> None:
        if self.out is not None:
            self.out.close()
            self.out = None


class AgentLogger:
    """The agent's file logger.

    Messages go to ``<home>/logs/<log_id>-<oname>[-YYYYMMDD].log`` and, when
    ``sys_out`` is set, to the console too. With a non-zero interval, a log id
    is written at most once per interval seconds.
    """

    def __init__(self, home: Optional[Union[str, os.PathLike]] = None, *,
                 log_id: str = "whatap", oname: str = "boot", interval: int = 0,
                 rotation_enabled: bool = True, keep_days: int = 7,
                 level: LogLevel = LogLevel.INFO, sys_out: bool = True,
                 stream: Optional[TextIO] = None,
                 clock: Callable[[], float] = time.time,
                 background: bool = False) -> None:
        self.home = Path(home) if home is not None else Path(log_home())
        self.log_id = log_id
        self.oname = oname
        self.interval = interval
        self.rotation_enabled = rotation_enabled
        self.keep_days = keep_days
        self.level = level
        self.sys_out = sys_out
        self.stream = stream
        self._clock = clock
        self._lock = threading.RLock()
        self._last_log: "OrderedDict[str, int]" = OrderedDict()
        self._file: Optional[TextIO] = None
        self.path: Optional[Path] = None
        self._last_clear = self._now_ms()
        self._day = self._today()
        self._last_rotation = rotation_enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if background:
            self._thread = threading.Thread(target=self._run, name="agent-log", daemon=True)
            self._thread.start()

    def __enter__(self) -> "AgentLogger":
        return self

    def __exit__(self, *exc: Any) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _today(self) -> date:
        return datetime.fromtimestamp(self._clock()).date()

    def _check_ok(self, log_id: str) -> bool:
        if self.interval <= 0:
            return True
        with self._lock:
            now = self._now_ms()
            last = self._last_log.get(log_id, 0)
            if now < last + self.interval * 1000:
                return False
            self._last_log[log_id] = now
            self._last_log.move_to_end(log_id)
            while len(self._last_log) > LAST_LOG_MAX:
                self._last_log.popitem(last=False)
        return True

    @staticmethod
    def _build(log_id: str, message: str) -> str:
        caller = _caller()
        if caller is None:
            return f"[{log_id}] {message}"
        filename = os.path.basename(caller.filename)
        return f"[{log_id}]({filename}:{caller.lineno})({caller.function}) {message}"

    def _emit(self, text: str) -> None:
        stamp = datetime.fromtimestamp(self._clock()).strftime("%Y/%m/%d %H:%M:%S")
        line = f"{stamp} {text}\n"
        with self._lock:
            if self._file is not None:
                self._file.write(line)
                self._file.flush()
            if self.sys_out or self._file is None:
                stream = self.stream if self.stream is not None else (
                    sys.stdout if self.sys_out else sys.stderr)
                stream.write(line)
                stream.flush()

    def println(self, log_id: str, *args: Any) -> None:
        """Log the operands under *log_id*, subject to the interval check."""
        if self._check_ok(log_id):
            self._emit(self._build(log_id, _sprint(args)))

    def printf(self, log_id: str, fmt: str, *args: Any) -> None:
        """Log a %-formatted message under *log_id*, subject to the interval check."""
        if self._check_ok(log_id):
            self._emit(self._build(log_id, fmt % args if args else fmt))

    def info(self, log_id: str, message: str) -> None:
        self._emit(self._build(log_id, message))

    def debug(self, log_id: str, message: str) -> None:
        if self.level <= LogLevel.DEBUG:
            self._emit(self._build(log_id, message))

    def error(self, log_id: str, message: str) -> None:
        """Log a message in red, bypassing the interval check."""
        self._emit(f"{_RED}{self._build(log_id, message)}{_RESET}")

    def update(self, oname: str) -> None:
        """Set the object name used in file names and open the log if none is open."""
        oname = oname.strip()
        if oname == self.oname:
            return
        self.oname = oname
        self.open_file()

    def _file_name(self) -> str:
        if self.rotation_enabled:
            return f"{self.log_id}-{self.oname}-{self._today():%Y%m%d}.log"
        return f"{self.log_id}-{self.oname}.log"

    def open_file(self) -> Path:
        """Open the current log file unless one is already open; return its path."""
        with self._lock:
            if self._file is None:
                self.logs_dir.mkdir(parents=True, exist_ok=True)
                path = self.logs_dir / self._file_name()
                self._file = open(path, "a", encoding="utf-8")
                self.path = path
                stamp = datetime.fromtimestamp(self._clock()).strftime("%Y-%m-%d %H:%M:%S")
                self._emit("")
                self._emit(f"## OPEN LOG FILE {self.oname} {stamp} ##")
                self._emit("")
            assert self.path is not None
            return self.path

    def rotate(self) -> Path:
        """Clean old logs once a minute and switch files on a new day or mode."""
        with self._lock:
            now = self._now_ms()
            if now > self._last_clear + CLEAR_INTERVAL_MS:
                self._last_clear = now
                self.clear_old_logs(self._today())
            today = self._today()
            if (self._last_rotation != self.rotation_enabled or self._day != today
                    or self._file is None):
                if self._file is not None:
                    self._file.close()
                    self._file = None
                self._last_rotation = self.rotation_enabled
                self._day = today
            return self.open_file()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.rotate()
            except OSError as exc:
                print(f"WA10005 Recover {exc}", file=sys.stderr)
            self._stop.wait(ROTATE_INTERVAL)

    def clear_old_logs(self, today: Optional[date] = None) -> list:
        """Delete dated log files older than the keep period; return their names."""
        removed: list = []
        if not self.rotation_enabled or self.keep_days <= 0:
            return removed
        if today is None:
            today = self._today()
        prefix = self.log_id + "-"
        try:
            entries = sorted(self.logs_dir.iterdir())
        except OSError:
            return removed
        for entry in entries:
            if entry.is_dir():
                continue
            name = entry.name
            if not name.startswith(prefix):
                continue
            dot = name.rfind(".")
            if dot < 0:
                continue
            dash = name.rfind("-")
            if dash < 0 or dash >= dot - 1:
                continue
            stamp = name[dash + 1:dot]
            if len(stamp) != 8:
                continue
            try:
                file_day = datetime.strptime(stamp, "%Y%m%d").date()
            except ValueError:
                continue
            if (today - file_day).days > self.keep_days:
                try:
                    entry.unlink()
                    removed.append(name)
                except OSError as exc:
                    print(f"WA10007 File Remove Error {exc}", file=sys.stderr)
        return removed

    def _dotnet_log_path(self) -> Path:
        return Path(os.path.join(os.environ.get("ProgramData", ""), "WhaTap", DOTNET_LOG))

    def log_files(self) -> Dict[str, int]:
        """Return the readable log files of this agent with their sizes."""
        out: Dict[str, int] = {}
        prefix = f"{self.log_id}-{self.oname}"
        try:
            entries = sorted(self.logs_dir.iterdir())
        except OSError:
            entries = []
        for entry in entries:
            if entry.is_dir():
                continue
            name = entry.name
            dot = name.find(".")
            if dot < 0:
                continue
            if name != HOOK_LOG:
                if not name.startswith(prefix + "-"):
                    continue
                if len(name[len(prefix) + 1:dot]) != 8:
                    continue
            try:
                out[name] = entry.stat().st_size
            except OSError:
                continue
            if len(out) >= LOG_FILES_MAX:
                break
        dotnet = self._dotnet_log_path()
        try:
            out[dotnet.name] = dotnet.stat().st_size
        except OSError:
            pass
        return out

    def read(self, name: str, end_pos: int, length: int) -> Optional[LogData]:
        """Read up to *length* bytes ending at *end_pos* (-1 for the end of file).

        Returns None for an empty name, a zero length, a file that is not one
        of this agent's logs or cannot be read, or an end beyond the file.
        """
        if not name or length == 0:
            return None
        if name != DOTNET_LOG and name != HOOK_LOG:
            if not name.startswith(f"{self.log_id}-{self.oname}"):
                return None
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        path = self._dotnet_log_path() if name == DOTNET_LOG else self.logs_dir / name
        try:
            with open(path, "rb") as handle:
                size = os.fstat(handle.fileno()).st_size
                if size < end_pos:
                    return None
                if end_pos < 0:
                    end_pos = size
                start = max(0, end_pos - length)
                readable = min(size - start, length)
                handle.seek(start)
                data = handle.read(readable)
        except OSError:
            return None
        next_pos = start + len(data)
        if next_pos + length > size:
            next_pos = -1
        else:
            next_pos += length
        return LogData(before=start, next=next_pos, text=data.decode("utf-8", errors="replace"))