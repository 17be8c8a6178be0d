import tomllib
from dataclasses import replace
from pathlib import Path

import pytest

from vibeflow import __version__
from vibeflow.config import ConfigError, VibeConfig, dumps_toml, load_config, save_config
from vibeflow.context import build_backends


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    default = VibeConfig.default()
    config = replace(
        default,
        agent=replace(
            default.agent, interactive=False, max_sessions=4, session_timeout_seconds=90.5
        ),
        workflow=replace(
            default.workflow,
            max_retries=5,
            max_parallel_agents=3,
            integration_branch="integration",
            reset_before_heal=False,
        ),
    )

    save_config(config_path, config)
    loaded = load_config(config_path, environ={})

    assert loaded.agent.interactive is False
    assert loaded.agent.max_sessions == 4
    assert loaded.agent.session_timeout_seconds == 90.5
    assert loaded.max_retries == 5
    assert loaded.max_parallel_agents == 3
    assert loaded.workflow.integration_branch == "integration"
    assert loaded.workflow.reset_before_heal is False
    assert loaded.paths.index_file == "project_index.json"
    assert loaded.workflow.ignore_patterns == default.workflow.ignore_patterns


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.toml", environ={})

    assert config.max_retries == 3
    assert config.max_parallel_agents == 2
    assert config.agent.interactive is True
    assert config.max_context_chars == 500 * 1024
    assert config.log_dir == Path(".vibe_logs")


def test_environment_overrides_file_values(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    save_config(config_path, VibeConfig.default())

    config = load_config(config_path, environ={"MAX_RETRIES": "7", "MAX_PARALLEL_AGENTS": " 4 "})

    assert config.max_retries == 7
    assert config.max_parallel_agents == 4


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("MAX_RETRIES", "abc"),
        ("MAX_RETRIES", "0"),
        ("MAX_PARALLEL_AGENTS", "-2"),
        ("MAX_PARALLEL_AGENTS", "1.5"),
    ],
)
def test_invalid_environment_values_are_rejected(name: str, value: str) -> None:
    with pytest.raises(ConfigError, match=name):
        VibeConfig.default().with_environment({name: value})


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    config_path.write_text("[workflow]\nmax_retriez = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration key"):
        load_config(config_path, environ={})


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    config_path.write_text("[workflow\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path, environ={})


def test_non_positive_limits_in_file_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    config_path.write_text("[workflow]\nmax_parallel_agents = 0\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="max_parallel_agents"):
        load_config(config_path, environ={})


def test_parallelism_cannot_exceed_the_tmux_session_cap(tmp_path: Path) -> None:
    config_path = tmp_path / "vibeflow.toml"
    config_path.write_text(
        "[agent]\nmax_sessions = 2\n\n[workflow]\nmax_parallel_agents = 3\n", encoding="utf-8"
    )

    message = r"max_parallel_agents \(3\) exceeds agent.max_sessions \(2\)"
    with pytest.raises(ConfigError, match=message):
        load_config(config_path, environ={})
    with pytest.raises(ConfigError, match="--direct"):
        load_config(None, environ={"MAX_PARALLEL_AGENTS": "11"})

    config_path.write_text(
        "[agent]\ninteractive = false\nmax_sessions = 2\n\n[workflow]\nmax_parallel_agents = 3\n",
        encoding="utf-8",
    )
    direct = load_config(config_path, environ={})

    assert direct.max_parallel_agents == 3
    with pytest.raises(ConfigError, match="exceeds agent.max_sessions"):
        build_backends(direct, interactive=True)


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(VibeConfig.default())
    data = tomllib.loads(rendered)

    assert set(data) == {"paths", "agent", "workflow"}
    assert data["agent"]["session_prefix"] == "vibe-task"
    assert data["workflow"]["integration_branch"] == "vibe"
    assert "max_parallel_agents" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
