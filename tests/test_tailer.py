import re
import threading
import time
from datetime import timedelta

import pytest
import yaml

from slokit.slo_config import ConfigError
from slokit.tailer import Positions, Tailer, TailerConfig, parse_line

LINE_PARSE_REGEXP = (
    r'^(?P<ip>[A-Fa-f0-9.:]{4,50}) \S+ \S+ \[(?P<time>.*?)\] "(?P<request>.*?)" (?P<statusCode>\d+) \d+ '
    r'"(?P<referer>.*?)" uag="(?P<userAgent>[^"]+)" "[^"]+" ua="[^"]+" rt="(?P<requestDuration>\d+(\.\d+)??)"'
    r'(?: frpc-status="(?P<frpcStatus>\d*|-)")?(?: slo-domain="(?P<sloDomain>[^"]*)")?'
    r'(?: slo-app="(?P<sloApp>[^"]*)")?(?: slo-class="(?P<sloClass>[^"]*)")?'
    r'(?: slo-endpoint="(?P<sloEndpoint>[^"]*)")?(?: slo-result="(?P<sloResult>[^"]*)")?'
)
EMPTY_GROUP_REGEXP = r"^-$"
REQUEST_LINE_FORMAT = (
    '{ip} - - [{time}] "{request}" {statusCode} 79 "-" uag="-" "-" ua="10.66.112.78:80" '
    'rt="{requestDuration}" frpc-status="{frpcStatus}" slo-domain="{sloDomain}" slo-app="{sloApp}" '
    'slo-class="{sloClass}" slo-endpoint="{sloEndpoint}" slo-result="{sloResult}"'
)
VALID = {
    "time": "12/Nov/2019:10:20:07 +0100",
    "ip": "34.65.133.58",
    "request": "GET /robots.txt HTTP/1.1",
    "statusCode": "200",
    "requestDuration": "0.123",
    "sloClass": "-",
    "sloDomain": "-",
    "sloApp": "-",
    "sloResult": "-",
    "sloEndpoint": "-",
    "frpcStatus": "-",
}


def request_line(mapping):
    line = REQUEST_LINE_FORMAT
    for key, value in mapping.items():
        line = line.replace("{" + key + "}", value)
    return line


def variant(**changes):
    mapping = dict(VALID, userAgent="-", referer="-")
    mapping.update(changes)
    return mapping


VALID_CASES = [
    variant(),
    variant(ip="2001:718:801:230::1"),
    variant(ip="2001:718:801:230::1", request="GET /robots.txt", statusCode="301"),
    variant(ip="2001:718:801:230::1", request="GET /robots.txt HTTP/2.0"),
    variant(ip="2001:718:801:230::1", statusCode="0"),
    variant(
        ip="2001:718:801:230::1",
        sloClass="critical",
        sloDomain="userportal",
        sloApp="frontend-api",
        sloResult="success",
        sloEndpoint="AdInventoryManagerInterestsQuery",
    ),
]
INVALID_CASES = [
    variant(time="32/Nov/2019:25:20:07 +0100", ip="2001:718:801:230::1", statusCode="200x"),
    variant(ip="2001:718:801:230::1", request="invalid-request[eof]", statusCode="200x"),
    variant(ip="2001:718:801:230::1", statusCode="xxx"),
]


@pytest.mark.parametrize("mapping", VALID_CASES)
def test_parse_valid_line(mapping):
    empty = re.compile(EMPTY_GROUP_REGEXP)
    data = parse_line(re.compile(LINE_PARSE_REGEXP), empty, request_line(mapping))
    expected = {key: value for key, value in mapping.items() if not empty.search(value)}
    assert data == expected


@pytest.mark.parametrize("mapping", INVALID_CASES)
def test_parse_invalid_line(mapping):
    with pytest.raises(ValueError):
        parse_line(re.compile(LINE_PARSE_REGEXP), re.compile(EMPTY_GROUP_REGEXP), request_line(mapping))


def test_parse_line_skips_empty_groups():
    data = parse_line(re.compile(LINE_PARSE_REGEXP), re.compile(EMPTY_GROUP_REGEXP), request_line(VALID))
    for key, value in VALID.items():
        if value == "-":
            assert key not in data
    assert data["statusCode"] == "200"


@pytest.mark.parametrize(
    "log_file, pos_file",
    [("/tmp/access_log", "/tmp/access_log.pos"), ("./access_log.pos", "./access_log.pos.pos")],
)
def test_default_positions_path(log_file, pos_file):
    assert TailerConfig(tailed_file=log_file).default_positions_path() == pos_file


def test_positions_round_trip(tmp_path):
    path = str(tmp_path / "positions.yaml")
    positions = Positions(path)
    assert positions.get("/var/log/a") == 0
    positions.put("/var/log/a", 123)
    positions.put("/var/log/b", 7)
    positions.remove("/var/log/b")
    positions.save()
    reloaded = Positions(path)
    assert reloaded.get("/var/log/a") == 123
    assert reloaded.get("/var/log/b") == 0
    with open(path, encoding="utf-8") as handle:
        assert yaml.safe_load(handle) == {"positions": {"/var/log/a": "123"}}


def test_positions_malformed_file(tmp_path):
    path = tmp_path / "positions.yaml"
    path.write_text("positions: [1, 2]\n")
    with pytest.raises(ConfigError):
        Positions(str(path))


def test_positions_invalid_offset(tmp_path):
    path = tmp_path / "positions.yaml"
    path.write_text('positions:\n  /var/log/a: "abc"\n')
    with pytest.raises(ValueError):
        Positions(str(path)).get("/var/log/a")


def _config(path, **overrides):
    values = dict(
        tailed_file=str(path),
        follow=False,
        reopen=False,
        position_persistence_interval=timedelta(seconds=10),
        logline_parse_regexp=LINE_PARSE_REGEXP,
        empty_group_re=EMPTY_GROUP_REGEXP,
        poll_interval=timedelta(milliseconds=20),
    )
    values.update(overrides)
    return TailerConfig(**values)


def test_reads_whole_file_without_follow(tmp_path):
    log = tmp_path / "access.log"
    log.write_text((request_line(VALID) + "\n") * 3 + "garbage\n")
    tailer = Tailer.from_config(_config(log))
    events = list(tailer.run())
    assert len(events) == 3
    assert events[0].metadata["ip"] == "34.65.133.58"
    assert events[0].quantity == 1
    assert tailer.lines_read_total == 4
    assert tailer.malformed_lines_total == 1
    assert tailer.done is True
    assert Positions(str(log) + ".pos").get(str(log)) == log.stat().st_size


def test_partial_last_line_is_emitted_without_follow(tmp_path):
    log = tmp_path / "access.log"
    log.write_text(request_line(VALID))
    events = list(Tailer.from_config(_config(log)).run())
    assert [event.metadata["statusCode"] for event in events] == ["200"]


def test_offset_beyond_file_size_restarts(tmp_path):
    log = tmp_path / "access.log"
    log.write_text(request_line(VALID) + "\n")
    positions = Positions(str(log) + ".pos")
    positions.put(str(log), 99999)
    positions.save()
    tailer = Tailer.from_config(_config(log))
    assert tailer.offset == 0
    assert len(list(tailer.run())) == 1


def test_reopen_without_follow_is_rejected(tmp_path):
    log = tmp_path / "access.log"
    log.write_text("")
    with pytest.raises(ConfigError):
        Tailer.from_config(_config(log, reopen=True))


def test_invalid_regexp_is_rejected(tmp_path):
    log = tmp_path / "access.log"
    log.write_text("")
    with pytest.raises(ConfigError):
        Tailer.from_config(_config(log, logline_parse_regexp="("))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Tailer.from_config(_config(tmp_path / "missing.log"))


def test_from_mapping(tmp_path):
    log = tmp_path / "access.log"
    log.write_text("hello world\n")
    tailer = Tailer.from_config(
        {"TailedFile": str(log), "Follow": False, "Reopen": False, "LoglineParseRegexp": r"(?P<word>\w+)"}
    )
    assert tailer.config.position_file == str(log) + ".pos"
    assert tailer.config.empty_group_re == "^$"
    assert tailer.config.position_persistence_interval == timedelta(seconds=2)
    assert [event.metadata for event in tailer.run()] == [{"word": "hello"}]


def test_from_mapping_unknown_key(tmp_path):
    log = tmp_path / "access.log"
    log.write_text("")
    with pytest.raises(ConfigError):
        Tailer.from_config({"TailedFile": str(log), "Bogus": 1})


def _write_lines(path, count):
    with open(path, "a", encoding="utf-8") as handle:
        handle.write((request_line(VALID) + "\n") * count)


def _follow_run(config, write_after_start, expected):
    tailer = Tailer.from_config(config)
    events = []
    thread = threading.Thread(target=lambda: events.extend(tailer.run()))
    thread.start()
    _write_lines(config.tailed_file, write_after_start)
    deadline = time.monotonic() + 5
    while len(events) < expected and time.monotonic() < deadline:
        time.sleep(0.02)
    time.sleep(0.1)
    tailer.stop()
    thread.join(5)
    return len(events), tailer


@pytest.mark.parametrize("pre, during, post, reopen", [(10, 10, 0, 0), (10, 10, 10, 10)])
def test_offset_persistence(tmp_path, pre, during, post, reopen):
    log = tmp_path / "access.log"
    log.write_text("")
    config = _config(log, follow=True, reopen=True, position_file=str(tmp_path / "access.log.pos"))
    _write_lines(log, pre)
    count, tailer = _follow_run(config, during, pre + during)
    assert count == pre + during
    assert tailer.done is True

    _write_lines(log, post)
    count, _ = _follow_run(config, reopen, post + reopen)
    assert count == post + reopen