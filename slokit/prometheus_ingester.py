"""Periodic Prometheus queries whose results are turned into raw events."""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterator, Mapping

import httpx

from slokit.events import RawEvent
from slokit.operators import parse_duration
from slokit.query_executor import (
    QueryExecutor,
    QueryOptions,
    Sample,
    SamplePair,
    SampleStream,
    Scalar,
)
from slokit.slo_config import ConfigError
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)

_END = object()

_TOP_KEYS = {"apiurl": "api_url", "queries": "queries", "querytimeout": "query_timeout"}
_QUERY_KEYS = {
    "query": "query",
    "interval": "interval",
    "droplabels": "drop_labels",
    "additionallabels": "additional_labels",
    "type": "type",
    "resultasquantity": "result_as_quantity",
}


def _format_time(ts: datetime) -> str:
    """Unix time in seconds with as many fractional digits as needed."""
    return format(Decimal(repr(ts.timestamp())).normalize(), "f")


def _pair(raw: Any) -> tuple[int, float]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise ValueError(f"malformed sample {raw!r}")
    timestamp, value = raw
    try:
        return round(float(timestamp) * 1000), float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"malformed sample {raw!r}") from exc


def _metric(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"malformed metric {raw!r}")
    return {str(name): str(value) for name, value in raw.items()}


def parse_query_response(payload: Any) -> Any:
    """Decode a Prometheus query API response into matrix, vector, scalar or string results.

    Raises RuntimeError when the API reports an error and ValueError for malformed payloads.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON in query response: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError("query response must be a JSON object")
    for warning in payload.get("warnings") or ():
        _log.warning("warning in query execution: %s", warning)
    status = payload.get("status")
    if status != "success":
        error_type = payload.get("errorType") or "error"
        error = payload.get("error") or f"unexpected status {status!r}"
        raise RuntimeError(f"{error_type}: {error}")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        raise ValueError("query response has no data")
    result_type = data.get("resultType")
    result = data.get("result")
    if result_type == "matrix":
        if not isinstance(result, list):
            raise ValueError("matrix result must be a list")
        return [
            SampleStream(
                metric=_metric(item.get("metric")),
                values=[SamplePair(*_pair(raw)) for raw in item.get("values") or ()],
            )
            for item in result
        ]
    if result_type == "vector":
        if not isinstance(result, list):
            raise ValueError("vector result must be a list")
        samples = []
        for item in result:
            timestamp, value = _pair(item.get("value"))
            samples.append(Sample(metric=_metric(item.get("metric")), timestamp=timestamp, value=value))
        return samples
    if result_type == "scalar":
        timestamp, value = _pair(result)
        return Scalar(timestamp=timestamp, value=value)
    if result_type == "string":
        if not isinstance(result, (list, tuple)) or len(result) != 2:
            raise ValueError(f"malformed string result {result!r}")
        return str(result[1])
    raise ValueError(f"unknown result type {result_type!r}")


class PrometheusApi:
    """Minimal client of the Prometheus instant query API."""

    def __init__(
        self,
        url: str,
        timeout: timedelta | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        seconds = timeout.total_seconds() if timeout else None
        self.url = url
        self._client = httpx.Client(base_url=url, timeout=seconds, transport=transport)

    def query(self, query: str, ts: datetime) -> Any:
        """Evaluate ``query`` at ``ts`` and return the decoded result."""
        try:
            response = self._client.post("/api/v1/query", data={"query": query, "time": _format_time(ts)})
        except httpx.HTTPError as exc:
            raise RuntimeError(f"request to Prometheus failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeError(
                f"unexpected response from Prometheus (HTTP {response.status_code})"
            ) from exc
        return parse_query_response(payload)

    def close(self) -> None:
        self._client.close()


def _duration(value: Any, name: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ConfigError(f"failed to load configuration: invalid {name}: {exc}") from exc
    raise ConfigError(f"failed to load configuration: {name} must be a duration")


def _fields(data: Any, allowed: Mapping[str, str], where: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"failed to load configuration: {where} must be a mapping")
    fields: dict[str, Any] = {}
    for key, value in data.items():
        name = allowed.get(str(key).lower())
        if name is None:
            raise ConfigError(f"failed to load configuration: unknown field {key!r} in {where}")
        fields[name] = value
    return fields


def _query_options(data: Any, position: int) -> QueryOptions:
    where = f"Queries[{position}]"
    fields = _fields(data, _QUERY_KEYS, where)
    query = fields.get("query") or ""
    if not isinstance(query, str):
        raise ConfigError(f"failed to load configuration: {where}.Query must be a string")
    interval = _duration(fields["interval"], f"{where}.Interval") if fields.get("interval") is not None else timedelta(0)
    drop = fields.get("drop_labels") or []
    if not isinstance(drop, list) or not all(isinstance(label, str) for label in drop):
        raise ConfigError(f"failed to load configuration: {where}.DropLabels must be a list of strings")
    additional = fields.get("additional_labels") or {}
    if not isinstance(additional, Mapping):
        raise ConfigError(f"failed to load configuration: {where}.AdditionalLabels must be a mapping")
    as_quantity = fields.get("result_as_quantity")
    if as_quantity is not None and not isinstance(as_quantity, bool):
        raise ConfigError(f"failed to load configuration: {where}.ResultAsQuantity must be a boolean")
    try:
        return QueryOptions(
            query=query,
            interval=interval,
            drop_labels=list(drop),
            additional_labels=StringMap({str(k): str(v) for k, v in additional.items()}),
            type=str(fields.get("type") or ""),
            result_as_quantity=as_quantity,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


@dataclass
class IngesterConfig:
    """Where to query and what to query."""

    api_url: str = ""
    queries: list[QueryOptions] = field(default_factory=list)
    query_timeout: timedelta = timedelta(0)
    transport: httpx.BaseTransport | None = None

    def _require(self) -> None:
        if self.query_timeout == timedelta(0):
            raise ConfigError("mandatory config field QueryTimeout is missing in PrometheusIngester configuration")
        if not self.api_url:
            raise ConfigError("mandatory config field ApiUrl is missing in PrometheusIngester configuration")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "IngesterConfig":
        """Build from a mapping with ApiUrl, QueryTimeout and Queries (keys case-insensitive)."""
        fields = _fields(data, _TOP_KEYS, "configuration")
        api_url = fields.get("api_url") or ""
        if not isinstance(api_url, str):
            raise ConfigError("failed to load configuration: ApiUrl must be a string")
        timeout = (
            _duration(fields["query_timeout"], "QueryTimeout")
            if fields.get("query_timeout") is not None
            else timedelta(0)
        )
        queries = fields.get("queries") or []
        if not isinstance(queries, list):
            raise ConfigError("failed to load configuration: Queries must be a list")
        config = cls(
            api_url=api_url,
            queries=[_query_options(item, position) for position, item in enumerate(queries)],
            query_timeout=timeout,
        )
        config._require()
        return config


class PrometheusIngester:
    """Runs all configured queries periodically and collects the produced events."""

    def __init__(self, config: IngesterConfig, api: Any = None) -> None:
        for options in config.queries:
            if options.interval <= timedelta(0):
                raise ValueError(f"query {options.query!r} needs a positive interval")
        self.config = config
        self._owns_api = api is None
        self.api = api if api is not None else PrometheusApi(config.api_url, config.query_timeout, config.transport)
        self._queue: queue.Queue[Any] = queue.Queue()
        self.executors = [QueryExecutor(options, self._queue.put, self.api) for options in config.queries]
        self._stop = threading.Event()
        self._supervisor: threading.Thread | None = None
        self.done = False

    def __str__(self) -> str:
        return "prometheusIngester"

    @classmethod
    def from_config(cls, data: IngesterConfig | Mapping[str, Any]) -> "PrometheusIngester":
        """Build from an IngesterConfig or a configuration mapping; ApiUrl and QueryTimeout are required."""
        if isinstance(data, IngesterConfig):
            data._require()
            return cls(data)
        return cls(IngesterConfig.from_dict(data))

    @property
    def query_fails_total(self) -> int:
        return sum(executor.query_fails_total for executor in self.executors)

    def run(self) -> None:
        """Start all queries in the background; returns immediately."""
        if self._supervisor is not None:
            raise RuntimeError("ingester is already running")
        workers = [
            threading.Thread(target=executor.run, args=(self._stop,), name="query-executor", daemon=True)
            for executor in self.executors
        ]
        for worker in workers:
            worker.start()

        def _supervise() -> None:
            self._stop.wait()
            _log.info("received shutdown request, waiting for all current ongoing requests to finish")
            for worker in workers:
                worker.join()
            if self._owns_api:
                self.api.close()
            _log.info("all done, finishing")
            self.done = True
            self._queue.put(_END)

        self._supervisor = threading.Thread(target=_supervise, name="prometheus-ingester", daemon=True)
        self._supervisor.start()

    def stop(self) -> None:
        """Ask all queries to finish; events() ends once they have."""
        self._stop.set()

    def events(self) -> Iterator[RawEvent]:
        """Yield produced events until the ingester has been stopped and drained."""
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item