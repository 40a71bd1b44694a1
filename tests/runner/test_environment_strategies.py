from typing import List, Mapping

import pytest

from calibre_updatr.runner import CalibredbEnvMode, CommandResult, CommandRunner
from calibre_updatr.runner.environment import (
    apply_defaults,
    clean_environment,
    stderr_signature_check,
)

pytestmark = pytest.mark.runner

MSGPACK_ERROR = "ModuleNotFoundError: No module named 'msgpack'"


class ScriptedRuns:
    """Replace the process layer with canned results, recording each environment."""

    def __init__(self, *outcomes: tuple[int, str]) -> None:
        self.outcomes = list(outcomes)
        self.envs: List[Mapping[str, str]] = []

    def __call__(self, argv, env, **_kwargs) -> CommandResult:
        self.envs.append(dict(env))
        returncode, stderr = self.outcomes[min(len(self.envs), len(self.outcomes)) - 1]
        return CommandResult(command=argv, returncode=returncode, stdout="", stderr=stderr)


def _runner(monkeypatch, mode, *outcomes, **kwargs):
    runner = CommandRunner(env_mode=mode, **kwargs)
    runs = ScriptedRuns(*outcomes)
    monkeypatch.setattr(runner, "_run_once", runs)
    return runner, runs


def test_inherit_success_runs_once(monkeypatch):
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.INHERIT, (0, ""))
    result = runner.execute(["calibredb", "list"])
    assert result.ok
    assert len(runs.envs) == 1


def test_inherit_retries_with_clean_env_on_signature(monkeypatch):
    monkeypatch.setenv("PYTHONPATH", "/somewhere/else")
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.INHERIT, (1, MSGPACK_ERROR), (0, ""))

    result = runner.execute(["calibredb", "list"])

    assert result.ok
    assert len(runs.envs) == 2
    assert runs.envs[0]["PYTHONPATH"] == "/somewhere/else"
    assert "PYTHONPATH" not in runs.envs[1]
    assert "VIRTUAL_ENV" not in runs.envs[1]


def test_inherit_without_signature_returns_first_failure(monkeypatch):
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.INHERIT, (2, "permission denied"))

    result = runner.execute(["calibredb", "list"])

    assert result.returncode == 2
    assert len(runs.envs) == 1


def test_inherit_clean_retry_failure_returns_retry_result(monkeypatch):
    runner, runs = _runner(
        monkeypatch, CalibredbEnvMode.INHERIT, (1, MSGPACK_ERROR), (4, "still broken")
    )

    result = runner.execute(["calibredb", "list"])

    assert result.returncode == 4
    assert result.stderr == "still broken"
    assert len(runs.envs) == 2


def test_custom_clean_retry_check(monkeypatch):
    runner, runs = _runner(
        monkeypatch,
        CalibredbEnvMode.INHERIT,
        (1, "ImportError: broken qt"),
        (0, ""),
        clean_retry_check=stderr_signature_check(["broken qt"]),
    )

    assert runner.execute(["calibredb", "list"]).ok
    assert len(runs.envs) == 2


def test_clean_mode_strips_python_tooling(monkeypatch):
    monkeypatch.setenv("PYTHONHOME", "/py")
    monkeypatch.setenv("UV_PYTHON", "3.12")
    monkeypatch.setenv("CONDA_PREFIX", "/conda")
    monkeypatch.setenv("HOME_PROBE", "kept")
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.CLEAN, (1, MSGPACK_ERROR))

    result = runner.execute(["calibredb", "list"])

    assert result.returncode == 1
    assert len(runs.envs) == 1
    env = runs.envs[0]
    assert "PYTHONHOME" not in env
    assert "UV_PYTHON" not in env
    assert "CONDA_PREFIX" not in env
    assert env["HOME_PROBE"] == "kept"


def test_override_tries_every_locale_and_returns_last_result(monkeypatch):
    runner, runs = _runner(
        monkeypatch,
        CalibredbEnvMode.OVERRIDE,
        (1, "first"),
        (1, "en_US"),
        (1, "C.utf8"),
        (1, "C"),
    )

    result = runner.execute(["calibredb", "list"])

    assert len(runs.envs) == 4
    assert [env.get("LC_ALL") for env in runs.envs[1:]] == ["en_US.utf8", "C.utf8", "C"]
    assert all(env["CALIBRE_OVERRIDE_LANG"] == "en" for env in runs.envs[1:])
    assert result.returncode == 1
    assert result.stderr == "C"


def test_override_stops_at_first_successful_variant(monkeypatch):
    runner, runs = _runner(
        monkeypatch, CalibredbEnvMode.OVERRIDE, (1, "first"), (1, "en_US"), (0, "")
    )

    result = runner.execute(["calibredb", "list"])

    assert result.ok
    assert len(runs.envs) == 3
    assert runs.envs[-1]["LANG"] == "C.utf8"


def test_strategies_only_apply_to_calibredb(monkeypatch):
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.OVERRIDE, (1, MSGPACK_ERROR))

    result = runner.execute(["fetch-ebook-metadata", "--isbn", "1"])

    assert result.returncode == 1
    assert len(runs.envs) == 1


def test_catalog_matched_by_basename(monkeypatch):
    runner, runs = _runner(monkeypatch, CalibredbEnvMode.OVERRIDE, (1, ""), (0, ""))

    assert runner.execute(["/opt/calibre/calibredb", "list"]).ok
    assert len(runs.envs) == 2


def test_clean_environment_and_defaults_helpers():
    env = {"PYTHONPATH": "x", "PIP_INDEX_URL": "y", "PATH": "/bin"}
    assert clean_environment(env) == {"PATH": "/bin"}
    assert clean_environment(env, ["PATH"]) == {"PYTHONPATH": "x", "PIP_INDEX_URL": "y"}

    merged = apply_defaults({"A": "1"}, {"A": "2", "B": "3"})
    assert merged == {"A": "1", "B": "3"}
