import pytest

from relayci import dag
from relayci.dsl import job, sh
from relayci.errors import ConfigError, CycleError


def _jobs(edges):
    return [job(name, sh("noop", "true"), needs=needs) for name, needs in edges]


CI_EDGES = [
    ("setup", []),
    ("install_rust", []),
    ("lint_commit_message", ["setup"]),
    ("test", ["install_rust"]),
    ("format", ["install_rust"]),
    ("clippy", ["install_rust"]),
    ("build", ["install_rust"]),
    ("pants", ["install_rust"]),
]


def test_resolve_places_every_job_after_its_dependencies() -> None:
    jobs = _jobs(CI_EDGES + [("release", ["build", "test", "lint_commit_message"])])
    order = dag.resolve(jobs)

    assert sorted(order) == sorted(j.name for j in jobs)
    position = {name: i for i, name in enumerate(order)}
    for j in jobs:
        for need in j.needs:
            assert position[need] < position[j.name]


def test_resolve_is_deterministic_in_declaration_order() -> None:
    assert dag.resolve(_jobs(CI_EDGES)) == [
        "setup",
        "install_rust",
        "lint_commit_message",
        "test",
        "format",
        "clippy",
        "build",
        "pants",
    ]


def test_dependency_declared_later_still_comes_first() -> None:
    assert dag.resolve(_jobs([("b", ["a"]), ("a", [])])) == ["a", "b"]


def test_two_job_cycle_names_both_members() -> None:
    with pytest.raises(CycleError) as exc:
        dag.resolve(_jobs([("A", ["B"]), ("B", ["A"])]))

    assert sorted(exc.value.members) == ["A", "B"]
    assert "A" in str(exc.value) and "B" in str(exc.value)
    assert isinstance(exc.value, ConfigError)


def test_cycle_members_exclude_the_acyclic_prefix() -> None:
    with pytest.raises(CycleError) as exc:
        dag.resolve(_jobs([("entry", ["x"]), ("x", ["y"]), ("y", ["z"]), ("z", ["x"])]))

    assert exc.value.members == ["x", "y", "z"]


def test_self_dependency_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="requires itself"):
        dag.resolve(_jobs([("a", ["a"])]))


def test_unknown_reference_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="missing job 'ghost'"):
        dag.resolve(_jobs([("a", ["ghost"])]))


def test_duplicate_names_are_rejected() -> None:
    with pytest.raises(ConfigError, match="Duplicate"):
        dag.validate(_jobs([("a", []), ("a", [])]))


def test_levels_group_parallel_jobs() -> None:
    assert dag.levels(_jobs(CI_EDGES)) == [
        ["setup", "install_rust"],
        ["lint_commit_message", "test", "format", "clippy", "build", "pants"],
    ]


def test_transitive_dependents() -> None:
    jobs = _jobs([("a", []), ("b", ["a"]), ("c", ["b"]), ("d", [])])
    adj = dag.dependents(jobs)

    assert dag.transitive_dependents(adj, "a") == ["b", "c"]
    assert dag.transitive_dependents(adj, "d") == []
