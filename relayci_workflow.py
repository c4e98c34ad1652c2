# relayci_workflow.py
# Workflow for relayci itself: lint, format check and tests, sharing a pip cache
from __future__ import annotations

from relayci.dsl import cached, checkout, job, sh, wf

PIP_CACHE = cached(
    'pip-v1-{{ arch }}-{{ checksum "pyproject.toml" }}',
    "~/.cache/pip",
    fallbacks=["pip-v1-{{ arch }}-"],
)


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            checkout(),
            sh("Install ruff", "python -m pip install -q ruff"),
            sh("Ruff check", "python -m ruff check src tests"),
            caches=[PIP_CACHE],
        ),

        # Format check job - ensures code is properly formatted
        job(
            "format-check",
            checkout(),
            sh("Install ruff", "python -m pip install -q ruff"),
            sh("Ruff format check", "python -m ruff format --check src tests"),
            needs=["lint"],
            caches=[PIP_CACHE],
        ),

        # Test job - runs pytest and keeps the JUnit report
        job(
            "test",
            checkout(),
            sh("Install package", "python -m pip install -q -e '.[test]'"),
            sh("Run pytest", "python -m pytest -q --junitxml=reports/junit.xml"),
            needs=["lint"],
            caches=[PIP_CACHE],
            reports=["reports/junit.xml"],
            timeout=900,
            save_cache_on_success_only=True,
        ),
    )
