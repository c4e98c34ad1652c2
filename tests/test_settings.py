from pathlib import Path

from relayci.settings import Settings


def test_from_env_reads_relayci_variables() -> None:
    settings = Settings.from_env(
        {
            "RELAYCI_WORKERS": "3",
            "RELAYCI_FAIL_FAST": "yes",
            "RELAYCI_CACHE_DIR": "/tmp/c",
            "RELAYCI_CACHE_URL": "redis://localhost:6379/0",
            "RELAYCI_OUTPUT_LIMIT": "2048",
            "RELAYCI_KILL_GRACE": "1.5",
            "RELAYCI_KEEP_WORKDIRS": "0",
            "RELAYCI_KEEP_RUNS": "5",
        }
    )

    assert settings.workers == 3
    assert settings.fail_fast is True
    assert settings.cache_dir == Path("/tmp/c")
    assert settings.cache_url == "redis://localhost:6379/0"
    assert settings.output_limit == 2048
    assert settings.kill_grace == 1.5
    assert settings.keep_workdirs is False
    assert settings.keep_runs == 5


def test_overrides_win_and_none_is_ignored() -> None:
    settings = Settings.from_env({"RELAYCI_WORKERS": "3"}, workers=8, cache_url=None)
    assert settings.workers == 8
    assert settings.cache_url is None


def test_defaults() -> None:
    settings = Settings.from_env({})
    assert settings.workers >= 1
    assert settings.fail_fast is False
    assert settings.with_overrides(fail_fast=True, workers=None).fail_fast is True
