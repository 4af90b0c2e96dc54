# slokit

slokit is a library for building SLO (service level objective) pipelines.
It turns raw observations, such as access-log lines or Prometheus query
results, into SLO events. Rules mark each SLO event as a success or a failure.

The stages are plain Python objects. Most of them have a `run(events)` method
that takes an iterable of events and yields events, so you can chain them as
generators.

## Installation

From a checkout of the project:

```
pip install .
```

The package depends on `pyyaml` and `httpx`.

## Events

`slokit.events` defines the data that flows between stages:

- `RawEvent` holds `metadata` (a `StringMap`), a `quantity` (default `1.0`), an optional `slo_classification` and a `key`.
  - `is_classified()` is true only when the domain, class and app are all set.
- `SloClassification` is a frozen dataclass with the fields `domain`, `class_` and `app`.
- `SloEvent` is the evaluated event. It carries the classification fields, `metadata`, `quantity`, `key` and a `result`.
  - `result` is `EventResult.SUCCESS` or `EventResult.FAIL`.

## Ingesting

### Log files: `slokit.tailer`

`Tailer` reads a file from its last stored offset and parses each line with a regular expression that has named groups. Each line that parses gives one `RawEvent`.

- **Empty groups.** A group whose text matches the empty-group expression is left out of the metadata. The default expression is `^$`.
- **Read positions.** Offsets are kept in a YAML positions file. Its default path is the tailed file's path with `.pos` appended. The file is saved every `PositionPersistenceInterval` (default `2s`) and again when tailing ends.
- **Following the file.** With `Follow` enabled (the default), the tailer waits for new lines. It detects truncation, and with `Reopen` it picks up a file that has been rotated or replaced.
- **Reopen needs follow.** `Reopen` without `Follow` is rejected.

```python
from slokit.tailer import Tailer

tailer = Tailer.from_config({
    "TailedFile": "access.log",
    "LoglineParseRegexp": r'^(?P<ip>\S+) .* (?P<statusCode>\d+)$',
    "EmptyGroupRE": "^-$",
    "Follow": False,
    "Reopen": False,
})
for event in tailer.run():
    print(event.metadata)
```

`Tailer.stop()` ends a running tailer. `parse_line(line_regexp, empty_group_regexp, line)` is available on its own.

### Prometheus queries: `slokit.prometheus_ingester`

`PrometheusIngester` runs instant queries against the Prometheus HTTP API (`/api/v1/query`). Each query has its own interval and runs in a background thread. Queries can have one of three types:

- **`simple`**: one event per returned sample. The result can be a matrix, a vector or a scalar.
- **`counter_increase`**: one event per counter, holding its increase since the previous run. A counter reset counts as a new start.
- **`histogram_increase`**: one event per bucket interval, holding the increase of observations in it.
  - The bounds go in `prometheusHistogramMinValue` and `prometheusHistogramMaxValue`.

Every event gets these metadata keys:

- `prometheusQueryResult` holds the value.
- `unixTimestamp` holds the time.

`DropLabels` and `AdditionalLabels` adjust the labels. `ResultAsQuantity` uses the value as the event's quantity. It is on by default for the two increase types. Events with a quantity of zero are not emitted.

```python
from slokit.prometheus_ingester import PrometheusIngester

ingester = PrometheusIngester.from_config({
    "ApiUrl": "http://localhost:9090",
    "QueryTimeout": "5s",
    "Queries": [
        {"Query": "http_requests_total", "Interval": "30s", "Type": "counter_increase"},
    ],
})
ingester.run()
# elsewhere: ingester.stop()
for event in ingester.events():   # ends after stop() once all queries have finished
    print(event.metadata, event.quantity)
```

`ApiUrl` and `QueryTimeout` are required. Durations use forms such as `500ms`, `30s` and `1h30m`.

The lower-level parts can be used directly:

- `slokit.query_executor.QueryExecutor` runs a single query.
- `slokit.prometheus_ingester.parse_query_response` decodes an API response.

## Relabelling: `slokit.relabel`

`EventRelabeler` applies Prometheus-style relabel rules to event metadata. The supported actions are:

- `replace`
- `keep`
- `drop`
- `labelmap`
- `labeldrop`
- `labelkeep`
- `hashmod`

Events that a rule drops are skipped and counted in `dropped_events_total`.

```python
from slokit.relabel import EventRelabeler

relabeler = EventRelabeler.from_config({"EventRelabelConfigs": [
    {"source_labels": ["to_be_dropped"], "regex": "true", "action": "drop"},
    {"action": "labelmap", "regex": "http_(.*)", "replacement": "$1"},
]})
```

Unknown fields in a rule are rejected with `ConfigError`.

## Classifying: `slokit.statistical_classifier`

`StatisticalClassifier` fills in a classification for events that lack one.

- **How it picks.** It makes a weighted random choice among the classifications seen in classified events over a sliding window.
  - `HistoryWindowSize` sets the window. The default is `30m`.
  - `HistoryWeightUpdateInterval` sets how often the weights are refreshed. The default is `1m`.
- **Default weights.** When no history exists yet, the `DefaultWeights` from the configuration are used.
- **Guessed events.** On a guessed classification, the app is set to `statistically-guessed`.
- **When it cannot guess.** Events that cannot be classified are dropped by `run`. In that case `classify` raises `ClassificationError`.

## Evaluating: `slokit.slo_producer` and `slokit.evaluator`

`SloEventProducer.from_config({"RulesFiles": [...]})` loads SLO rules from YAML files. It then evaluates each classified event against every rule. Each matching rule gives one `SloEvent`.

A rules file looks like this:

```yaml
rules:
  - slo_matcher:
      domain: userportal
    metadata_matcher:
      - operator: isEqualTo
        key: name
        value: ad.banner
    failure_conditions:
      - operator: numberIsHigherThan
        key: statusCode
        value: "499"
      - operator: durationIsHigherThan
        key: requestDuration
        value: 2s
    additional_metadata:
      slo_type: availability
```

The sections of a rule work as follows:

- **`slo_matcher`** holds regular expressions that are searched in the domain, class and app.
- **`metadata_matcher`** holds operators that must all hold for the rule to apply.
- **`failure_conditions`** holds operators. If any of them holds, the event is marked as failed.
- **`additional_metadata`** is copied into the SLO event.

The operators are:

- `isEqualTo`
- `isNotEqualTo`
- `isMatchingRegexp`
- `isNotMatchingRegexp`
- `numberIsEqualTo`
- `numberIsNotEqualTo`
- `numberIsHigherThan`
- `numberIsEqualOrHigherThan`
- `numberIsEqualOrLessThan`
- `durationIsHigherThan`

```python
from slokit.evaluator import EventEvaluator
from slokit.events import RawEvent, SloClassification

evaluator = EventEvaluator.from_files(["slo_rules.yaml"])
event = RawEvent(
    metadata={"statusCode": "502"},
    slo_classification=SloClassification(domain="userportal", class_="critical", app="api"),
)
for slo_event in evaluator.evaluate(event):
    print(slo_event.result)
```

`EventEvaluator.rule_metrics()` returns the thresholds of the rules as `Metric` values with labels.

## Utilities

- `slokit.stringmap.StringMap` is a `dict` of strings with non-mutating helpers: `merge`, `select`, `without`, `lowercase`, `matches` and `sorted_keys`.
  - Its string form is `a="1",b="2"`.
- `slokit.storage.CappedContainer` is a thread-safe history of bounded size. It keeps the newest items.

## What the package does not do

- **No command-line program or daemon.** The stages are library objects that you wire together yourself.
- **No metrics endpoint.** Counters such as `dropped_events_total`, `query_fails_total` or `lines_read_total` are plain attributes on the stage objects. They are not served over HTTP.
- **No exporter of SLO events.** The produced `SloEvent` objects are returned to the caller.

## Running the tests

```
pip install .[test]
pytest
```