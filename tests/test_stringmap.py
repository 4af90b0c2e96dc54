import pytest

from slokit.stringmap import StringMap


@pytest.mark.parametrize(
    "a, b, result",
    [
        ({"a": "1"}, {"b": "2"}, False),
        ({"a": "1"}, {"a": "2"}, False),
        ({"a": "1"}, {"a": "1"}, True),
        ({}, {"a": "1"}, True),
        ({"a": "1"}, {}, False),
    ],
)
def test_matches(a, b, result):
    assert StringMap(a).matches(StringMap(b)) is result


@pytest.mark.parametrize(
    "a, b, result",
    [
        ({"a": "1"}, {"b": "2"}, {"a": "1", "b": "2"}),
        ({"a": "1"}, {"a": "2"}, {"a": "2"}),
        ({"a": "1"}, {}, {"a": "1"}),
        ({}, {"a": "1"}, {"a": "1"}),
        ({}, {}, {}),
        ({"a": "1"}, None, {"a": "1"}),
    ],
)
def test_merge(a, b, result):
    merged = StringMap(a).merge(b)
    assert merged == result
    assert isinstance(merged, StringMap)


def test_merge_does_not_modify_original():
    original = StringMap({"a": "1"})
    original.merge({"a": "2", "b": "3"})
    assert original == {"a": "1"}


@pytest.mark.parametrize(
    "meta, res",
    [({"a": "1"}, ["a"]), ({"a": "1", "b": "2"}, ["a", "b"]), ({}, [])],
)
def test_keys(meta, res):
    assert sorted(StringMap(meta).keys()) == sorted(res)


@pytest.mark.parametrize(
    "meta, res",
    [({"a": "1"}, ["1"]), ({"a": "1", "b": "2"}, ["1", "2"]), ({}, [])],
)
def test_values(meta, res):
    assert sorted(StringMap(meta).values()) == sorted(res)


@pytest.mark.parametrize(
    "meta, res",
    [
        ({"a": "1"}, 'a="1"'),
        ({"a": "1", "b": "2"}, 'a="1",b="2"'),
        ({"b": "1", "a": "2"}, 'a="2",b="1"'),
        ({"": ""}, '=""'),
        ({"a": ""}, 'a=""'),
        ({}, ""),
    ],
)
def test_string(meta, res):
    assert str(StringMap(meta)) == res


@pytest.mark.parametrize(
    "meta, keys, res",
    [
        ({"a": "1"}, [], {}),
        ({"a": "1"}, ["a"], {"a": "1"}),
        ({"a": "1"}, ["b"], {}),
        ({}, ["b"], {}),
        ({"a": "1", "b": "2"}, ["a", "b"], {"a": "1", "b": "2"}),
    ],
)
def test_select(meta, keys, res):
    assert StringMap(meta).select(keys) == res


@pytest.mark.parametrize(
    "meta, res",
    [({"A": "1"}, {"a": "1"}), ({"AbfE": "s2EEr"}, {"abfe": "s2eer"})],
)
def test_lowercase(meta, res):
    assert StringMap(meta).lowercase() == res


@pytest.mark.parametrize(
    "a, keys, result",
    [
        ({"a": "1", "b": "2"}, ["b"], {"a": "1"}),
        ({"a": "2"}, ["a"], {}),
        ({"a": "1"}, [], {"a": "1"}),
        ({}, [], {}),
        ({"a": "1"}, None, {"a": "1"}),
    ],
)
def test_without(a, keys, result):
    assert StringMap(a).without(keys) == result


def test_without_leaves_original_intact():
    original = StringMap({"a": "1", "b": "2"})
    original.without(["a"])
    assert original == {"a": "1", "b": "2"}


@pytest.mark.parametrize(
    "metric, result",
    [
        ({"a": "1", "b": "2"}, {"a": "1", "b": "2"}),
        ({"a": "1"}, {"a": "1"}),
        ({}, {}),
    ],
)
def test_new_from_metric(metric, result):
    assert StringMap(metric) == result


@pytest.mark.parametrize(
    "source, labels",
    [
        ({}, []),
        ({"foo": "bar"}, [("foo", "bar")]),
        ({"": ""}, [("", "")]),
    ],
)
def test_as_labels(source, labels):
    assert StringMap(source).as_labels() == labels


@pytest.mark.parametrize(
    "labels, expected",
    [
        ([], {}),
        ([("foo", "bar")], {"foo": "bar"}),
        ([("", "")], {"": ""}),
        (None, {}),
    ],
)
def test_from_labels(labels, expected):
    assert StringMap.from_labels(labels) == expected


def test_labels_round_trip():
    original = StringMap({"b": "2", "a": "1"})
    assert StringMap.from_labels(original.as_labels()) == original


def test_new_with_and_add_keys():
    base = StringMap({"a": "1"})
    extended = base.new_with("foo", "bar")
    assert extended == {"a": "1", "foo": "bar"}
    assert base == {"a": "1"}
    base.add_keys("x", "y")
    assert base == {"a": "1", "x": "", "y": ""}


def test_sorted_keys_and_values_by_keys():
    data = StringMap({"b": "2", "a": "1", "c": "3"})
    assert data.sorted_keys() == ["a", "b", "c"]
    assert data.values_by_keys(["c", "missing", "a"]) == ["3", "1"]


def test_copy_is_independent():
    original = StringMap({"a": "1"})
    copied = original.copy()
    copied["a"] = "2"
    assert original["a"] == "1"
    assert isinstance(copied, StringMap)