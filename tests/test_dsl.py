import pytest

from relayci import attach, build, cached, checkout, job, matrix, persist, sh, wf
from relayci.model import STEP_ATTACH, STEP_CHECKOUT, STEP_PERSIST, STEP_RUN


def test_job_helper() -> None:
    spec = job(
        "test",
        checkout(),
        sh("unit", "pytest -q"),
        needs=["lint"],
        env={"PYTHONHASHSEED": 0},
        cwd="app",
        timeout=600,
    )

    assert [s.kind for s in spec.steps] == [STEP_CHECKOUT, STEP_RUN]
    assert spec.steps[1].cwd == "app"
    assert spec.needs == ("lint",)
    assert spec.env == {"PYTHONHASHSEED": "0"}
    assert spec.timeout == 600


def test_job_without_steps_is_rejected() -> None:
    with pytest.raises(ValueError):
        job("empty")


def test_builder() -> None:
    spec = (
        build("install")
        .depends_on("setup")
        .define_step("deps", "pip install -r requirements.txt")
        .add_step(persist(".venv"))
        .with_env(PIP_NO_INPUT=1)
        .with_environment(image="python:3.12")
        .with_cache(cached('pip-{{ checksum "requirements.txt" }}', "~/.cache/pip", fallbacks=["pip-"]))
        .with_report("junit.xml")
        .with_timeout(120)
        .save_cache_on_success_only()
        .build()
    )

    assert spec.needs == ("setup",)
    assert spec.steps[1].kind == STEP_PERSIST
    assert spec.steps[1].data == {"root": ".", "paths": [".venv"]}
    assert spec.env == {"PIP_NO_INPUT": "1"}
    assert spec.environment == {"image": "python:3.12"}
    (cache,) = spec.caches
    assert cache.keys == ('pip-{{ checksum "requirements.txt" }}', "pip-")
    assert cache.paths == ("~/.cache/pip",)
    assert spec.reports == ("junit.xml",)
    assert spec.timeout == 120
    assert spec.save_cache_on_success_only


def test_builder_without_steps() -> None:
    with pytest.raises(ValueError, match="has no steps"):
        build("nothing").build()


def test_matrix_and_wf_flatten() -> None:
    jobs = wf(
        job("lint", sh("ruff", "ruff check .")),
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", attach(), sh("pytest", f"python{v} -m pytest"), needs=["lint"])
        ),
    )

    assert [j.name for j in jobs] == ["lint", "test-py3.11", "test-py3.12"]
    assert jobs[1].steps[0].kind == STEP_ATTACH
