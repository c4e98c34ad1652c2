from pathlib import Path

import pytest
from click.testing import CliRunner

from relayci.cache import CacheStore
from relayci.cli import cli

PIPELINE = """
jobs:
  lint:
    steps:
    - checkout
    - run: test -f README
  test:
    steps:
    - run:
        name: junit
        command: echo '<testsuite name="unit"><testcase name="ok"/></testsuite>' > junit.xml
    - store_test_results:
        path: junit.xml
workflows:
  commit:
    jobs:
    - lint
    - test: { requires: [lint] }
"""


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for var in ("RELAYCI_CACHE_URL", "RELAYCI_ARCHIVE_URL", "RELAYCI_WORK_DIR", "RELAYCI_CACHE_DIR", "RELAYCI_SOURCE_DIR"):
        monkeypatch.delenv(var, raising=False)
    (tmp_path / "README").write_text("hello\n")
    return tmp_path


def test_validate(project: Path) -> None:
    (project / ".relayci.yml").write_text(PIPELINE)
    result = CliRunner().invoke(cli, ["validate"], obj={})

    assert result.exit_code == 0, result.output
    assert "workflow 'commit' with 2 job(s) is valid" in result.output


def test_plan(project: Path) -> None:
    (project / ".relayci.yml").write_text(PIPELINE)
    result = CliRunner().invoke(cli, ["plan"], obj={})

    assert result.exit_code == 0, result.output
    assert "1. lint" in result.output
    assert "stage 2: test" in result.output


def test_run_succeeds_and_writes_junit(project: Path) -> None:
    (project / ".relayci.yml").write_text(PIPELINE)
    result = CliRunner().invoke(
        cli, ["run", "--workers", "2", "--junit", "out.xml", "--archive", "sqlite:///runs.db"], obj={}
    )

    assert result.exit_code == 0, result.output
    assert "[lint] SUCCESS" in result.output
    assert ": SUCCEEDED" in result.output
    junit = (project / "out.xml").read_text()
    assert 'name="test:junit.xml"' in junit
    assert (project / "runs.db").exists()
    # work directories are cleaned up after the run
    assert list((project / ".relayci" / "work").iterdir()) == []


def test_run_failure_exits_non_zero(project: Path) -> None:
    (project / "ci.yml").write_text("jobs:\n  a:\n    steps:\n    - run: echo nope && exit 4\n")
    result = CliRunner().invoke(cli, ["run", "--pipeline", "ci.yml"], obj={})

    assert result.exit_code == 1
    assert "[a] FAILED (StepFailure)" in result.output
    assert "nope" in result.output


def test_invalid_pipeline_exits_2(project: Path) -> None:
    (project / ".relayci.yml").write_text("jobs:\n  a: {requires: [b], steps: [checkout]}\n")
    result = CliRunner().invoke(cli, ["validate"], obj={})

    assert result.exit_code == 2
    assert "missing job 'b'" in result.output


def test_missing_pipeline(project: Path) -> None:
    result = CliRunner().invoke(cli, ["run"], obj={})
    assert result.exit_code == 1
    assert "No pipeline file found" in result.output


def test_ambiguous_pipeline(project: Path) -> None:
    (project / ".relayci.yml").write_text(PIPELINE)
    (project / "deploy_workflow.py").write_text("JOBS = []\n")
    result = CliRunner().invoke(cli, ["validate"], obj={})

    assert result.exit_code == 1
    assert "Multiple pipeline files found" in result.output


def test_python_workflow(project: Path) -> None:
    (project / "relayci_workflow.py").write_text(
        "from relayci import build\n"
        "JOBS = [build('hello').define_step('say', 'echo hi').build()]\n"
    )
    result = CliRunner().invoke(cli, ["run"], obj={})
    assert result.exit_code == 0, result.output


def test_cache_prune(project: Path) -> None:
    store = CacheStore.local(project / ".relayci" / "cache")
    for i in range(4):
        store.save(f"deps-{i}", b"x")

    result = CliRunner().invoke(cli, ["cache", "prune", "deps-", "--keep", "4"], obj={})
    assert result.exit_code == 0, result.output
    assert "Removed 0 cache entries" in result.output

    result = CliRunner().invoke(cli, ["cache", "prune", "deps-", "--keep", "0"], obj={})
    assert "Removed 4 cache entries" in result.output
    assert store.backend.keys() == {}
