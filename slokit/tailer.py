"""Following a log file and turning its lines into raw events."""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, BinaryIO, Callable, Iterator, Mapping

import yaml

from slokit.events import RawEvent
from slokit.operators import parse_duration
from slokit.slo_config import ConfigError
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)


def parse_line(
    line_regexp: re.Pattern[str], empty_group_regexp: re.Pattern[str], line: str
) -> StringMap:
    """Return the named groups of the line; groups matching ``empty_group_regexp`` are left out."""
    match = line_regexp.search(line)
    if match is None:
        raise ValueError("unable to parse line")
    data = StringMap()
    for name in line_regexp.groupindex:
        value = match.group(name) or ""
        if empty_group_regexp.search(value):
            continue
        data[name] = value
    return data


@dataclass
class TailerConfig:
    tailed_file: str = ""
    follow: bool = True
    reopen: bool = True
    position_file: str = ""
    position_persistence_interval: timedelta = timedelta(seconds=2)
    logline_parse_regexp: str = ""
    empty_group_re: str = "^$"
    poll_interval: timedelta = timedelta(milliseconds=250)

    def default_positions_path(self) -> str:
        return self.tailed_file + ".pos"


_CONFIG_KEYS = {
    "tailedfile": "tailed_file",
    "follow": "follow",
    "reopen": "reopen",
    "positionfile": "position_file",
    "positionpersistenceinterval": "position_persistence_interval",
    "loglineparseregexp": "logline_parse_regexp",
    "emptygroupre": "empty_group_re",
}


def _config_from_mapping(data: Mapping[str, Any]) -> TailerConfig:
    values: dict[str, Any] = {}
    for key, value in data.items():
        name = _CONFIG_KEYS.get(str(key).lower())
        if name is None:
            raise ConfigError(f"failed to load configuration: unknown field {key!r}")
        if value is None:
            continue
        if name in ("follow", "reopen"):
            if not isinstance(value, bool):
                raise ConfigError(f"failed to load configuration: {key} must be a boolean")
        elif name == "position_persistence_interval":
            if isinstance(value, str):
                try:
                    value = parse_duration(value)
                except ValueError as exc:
                    raise ConfigError(f"failed to load configuration: {exc}") from exc
            elif not isinstance(value, timedelta):
                raise ConfigError(f"failed to load configuration: {key} must be a duration")
        elif not isinstance(value, str):
            raise ConfigError(f"failed to load configuration: {key} must be a string")
        values[name] = value
    return TailerConfig(**values)


class Positions:
    """Persistent record of read offsets per file, kept in a YAML file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._positions: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as handle:
                content = handle.read()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise ConfigError(f"could not read positions file {self.path}: {exc}") from exc
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid positions file {self.path}: {exc}") from exc
        if data is None:
            return {}
        positions = data.get("positions") if isinstance(data, Mapping) else None
        if positions is None and isinstance(data, Mapping):
            return {}
        if not isinstance(positions, Mapping):
            raise ConfigError(f"invalid positions file {self.path}: expected a mapping of positions")
        return {str(key): str(value) for key, value in positions.items()}

    def get(self, path: str) -> int:
        """Return the stored offset for a file, 0 if there is none."""
        with self._lock:
            raw = self._positions.get(path)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"invalid offset {raw!r} stored for {path}") from None

    def put(self, path: str, offset: int) -> None:
        with self._lock:
            self._positions[path] = str(int(offset))

    def remove(self, path: str) -> None:
        with self._lock:
            self._positions.pop(path, None)

    def save(self) -> None:
        """Write the positions to their file atomically."""
        with self._lock:
            content = yaml.safe_dump({"positions": dict(sorted(self._positions.items()))}, default_flow_style=False)
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, temporary = tempfile.mkstemp(dir=directory, prefix=".positions-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(temporary, self.path)
        except BaseException:
            if os.path.exists(temporary):
                os.unlink(temporary)
            raise


class Tailer:
    """Reads a log file from its last stored offset and yields an event per parsed line."""

    def __init__(self, config: TailerConfig, observer: Callable[[float], None] | None = None) -> None:
        if not config.position_file:
            config = dataclasses.replace(config, position_file=config.default_positions_path())
        self.config = config
        self.observer = observer
        self.positions = Positions(config.position_file)
        size = os.stat(config.tailed_file).st_size
        offset = self.positions.get(config.tailed_file)
        if size < offset:
            _log.warning(
                "loaded position %d for %s is larger than the file size %d, starting from the beginning",
                offset,
                config.tailed_file,
                size,
            )
            self.positions.remove(config.tailed_file)
            offset = 0
        if not config.follow and config.reopen:
            raise ConfigError("cannot use reopen without follow")
        try:
            self.line_regexp = re.compile(config.logline_parse_regexp)
        except re.error as exc:
            raise ConfigError(
                f"error while compiling the line parse RE ({config.logline_parse_regexp!r}): {exc}"
            ) from exc
        try:
            self.empty_group_regexp = re.compile(config.empty_group_re)
        except re.error as exc:
            raise ConfigError(
                f"error while compiling the empty group matching RE ({config.empty_group_re!r}): {exc}"
            ) from exc
        self.offset = offset
        self.lines_read_total = 0
        self.malformed_lines_total = 0
        self.file_size_bytes = size
        self.file_offset_bytes = offset
        self.done = False
        self._stop = threading.Event()

    def __str__(self) -> str:
        return "tailer"

    @classmethod
    def from_config(cls, config: TailerConfig | Mapping[str, Any]) -> "Tailer":
        """Build from a TailerConfig or a mapping with the configuration keys (case-insensitive)."""
        if isinstance(config, TailerConfig):
            return cls(config)
        if isinstance(config, Mapping):
            return cls(_config_from_mapping(config))
        raise ConfigError("failed to load configuration: expected a mapping")

    def process_line(self, line: str) -> RawEvent:
        """Parse a line into an event; raises ValueError for malformed lines."""
        return RawEvent(metadata=parse_line(self.line_regexp, self.empty_group_regexp, line), quantity=1)

    def _consume(self, raw: bytes) -> RawEvent | None:
        start = time.perf_counter()
        self.lines_read_total += 1
        line = raw.decode("utf-8", errors="replace")
        try:
            event: RawEvent | None = self.process_line(line)
        except ValueError as exc:
            self.malformed_lines_total += 1
            _log.error("error (%s) while parsing line %r", exc, line)
            event = None
        if self.observer is not None:
            self.observer(time.perf_counter() - start)
        return event

    def _mark_offset(self) -> None:
        self.file_offset_bytes = self.offset
        self.positions.put(self.config.tailed_file, self.offset)
        try:
            self.file_size_bytes = os.stat(self.config.tailed_file).st_size
        except OSError as exc:
            _log.error("unable to get file size: %s", exc)

    def _follow(self, handle: BinaryIO) -> BinaryIO | None:
        """Handle removal, rotation and truncation at end of file; None ends tailing."""
        path = self.config.tailed_file
        try:
            current = os.stat(path)
        except FileNotFoundError:
            if self.config.reopen:
                return handle
            _log.info("tailed file %s was removed, finishing", path)
            handle.close()
            return None
        opened = os.fstat(handle.fileno())
        if (current.st_dev, current.st_ino) != (opened.st_dev, opened.st_ino):
            if not self.config.reopen:
                _log.info("tailed file %s was replaced, finishing", path)
                handle.close()
                return None
            try:
                reopened = open(path, "rb")
            except FileNotFoundError:
                return handle
            handle.close()
            self.offset = 0
            return reopened
        if current.st_size < self.offset:
            _log.info("re-opening truncated file %s", path)
            handle.seek(0)
            self.offset = 0
        return handle

    def run(self) -> Iterator[RawEvent]:
        """Yield events for the file's lines until stopped or, when not following, until its end."""
        self.done = False
        persist_every = self.config.position_persistence_interval.total_seconds()
        poll = self.config.poll_interval.total_seconds()
        handle: BinaryIO | None = open(self.config.tailed_file, "rb")
        handle.seek(self.offset)
        last_persist = time.monotonic()
        try:
            while not self._stop.is_set():
                if time.monotonic() - last_persist >= persist_every:
                    self._mark_offset()
                    self.positions.save()
                    last_persist = time.monotonic()
                chunk = handle.readline()
                if chunk.endswith(b"\n"):
                    self.offset += len(chunk)
                    event = self._consume(chunk[:-1])
                    if event is not None:
                        yield event
                    continue
                if not self.config.follow:
                    if chunk:
                        self.offset += len(chunk)
                        event = self._consume(chunk)
                        if event is not None:
                            yield event
                    break
                handle.seek(self.offset)
                handle = self._follow(handle)
                if handle is None:
                    break
                self._stop.wait(poll)
        finally:
            if handle is not None:
                handle.close()
            self._mark_offset()
            self.positions.save()
            self.done = True

    def stop(self) -> None:
        """Ask a running tailer to finish after the line being processed."""
        if not self.done:
            self._stop.set()