import pytest

from relayci.dag import build_graph
from relayci.errors import ConfigurationError
from relayci.model import Job


def test_diamond_stages():
    graph = build_graph([
        Job("d", needs=["b", "c"]),
        Job("b", needs=["a"]),
        Job("c", needs=["a"]),
        Job("a"),
    ])
    assert graph.stages() == [["a"], ["b", "c"], ["d"]]
    assert graph.roots() == ["a"]
    assert graph.dependents["a"] == {"b", "c"}
    assert len(graph) == 4


def test_repeated_need_counts_once():
    graph = build_graph([Job("a"), Job("b", needs=["a", "a"])])
    assert graph.indegree() == {"a": 0, "b": 1}
    assert graph.stages() == [["a"], ["b"]]


def test_cycle_is_rejected():
    with pytest.raises(ConfigurationError) as exc:
        build_graph([Job("a", needs=["b"]), Job("b", needs=["a"])])
    assert "cycle" in exc.value.message
    assert exc.value.details["stuck"] == ["a", "b"]


def test_longer_cycle_is_rejected():
    with pytest.raises(ConfigurationError):
        build_graph([Job("root"), Job("a", needs=["c", "root"]), Job("b", needs=["a"]), Job("c", needs=["b"])])


def test_missing_need():
    with pytest.raises(ConfigurationError) as exc:
        build_graph([Job("a", needs=["ghost"])])
    assert exc.value.job == "a"


def test_self_need():
    with pytest.raises(ConfigurationError):
        build_graph([Job("a", needs=["a"])])


def test_duplicate_names():
    with pytest.raises(ConfigurationError):
        build_graph([Job("a"), Job("a")])


def test_empty_graph():
    graph = build_graph([])
    assert graph.stages() == []
    assert graph.roots() == []


def test_needs_of():
    graph = build_graph([Job("a"), Job("b"), Job("c", needs=["a", "b", "a"])])
    assert graph.needs_of("c") == {"a", "b"}
    assert graph.needs_of("a") == set()


def test_job_lands_after_its_deepest_need():
    graph = build_graph([
        Job("lint"),
        Job("build", needs=["lint"]),
        Job("image", needs=["build"]),
        Job("deploy", needs=["lint", "image"]),
        Job("docs", needs=["lint"]),
    ])
    assert graph.stages() == [["lint"], ["build", "docs"], ["image"], ["deploy"]]
