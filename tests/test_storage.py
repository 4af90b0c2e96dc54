from collections import Counter

import pytest

from slokit.storage import CappedContainer, Container


@pytest.mark.parametrize("capacity", [0, 3, 100])
def test_capacity(capacity):
    assert CappedContainer(capacity).capacity == capacity


@pytest.mark.parametrize(
    "capacity, items, expected",
    [
        (-1, [1, 2, 3], []),
        (0, [1, 2, 3], []),
        (100, [1, 2, 3], [1, 2, 3]),
        (3, [1, 2, 3, 4, 5], [3, 4, 5]),
    ],
)
def test_capping(capacity, items, expected):
    container = CappedContainer(capacity)
    for item in items:
        container.add(item)
    assert Counter(container.stream()) == Counter(expected)


@pytest.mark.parametrize("item", [1, "foo", ()])
def test_add(item):
    container = CappedContainer(1)
    container.add(item)
    assert list(container.stream()) == [item]


@pytest.mark.parametrize("count", [0, 3, 100])
def test_len(count):
    container = CappedContainer(count)
    for _ in range(count):
        container.add(())
    assert len(container) == count


@pytest.mark.parametrize(
    "items",
    [[1, 2, 3], ["a", "b", "c"], [(), (), ()]],
)
def test_stream(items):
    container = CappedContainer(len(items))
    for item in items:
        container.add(item)
    assert len(container) == len(items)
    assert Counter(container.stream()) == Counter(items)


def test_stream_yields_most_recent_first():
    container = CappedContainer(5)
    for item in [1, 2, 3]:
        container.add(item)
    assert list(container.stream()) == [3, 2, 1]


def test_stream_is_a_snapshot():
    container = CappedContainer(5)
    container.add(1)
    stream = container.stream()
    container.add(2)
    assert list(stream) == [1]


def test_container_is_abstract():
    with pytest.raises(TypeError):
        Container()