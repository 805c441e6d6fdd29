"""Tests for configuration loading and validation."""

import textwrap
from pathlib import Path

import pytest

from backlog_runner.config import RunnerConfig
from backlog_runner.errors import ConfigurationError
from backlog_runner.models import Priority


def write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return path


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self) -> None:
        config = RunnerConfig()

        assert config.github.ready_column == "Ready"
        assert config.github.failed_label == "needs-attention"
        assert config.branch.prefix == "feature/issue-"
        assert config.dependencies.patterns == ["depends on", "blocked by", "requires"]
        assert config.dependencies.cache_timeout == 300
        assert config.budget.per_task_limit is None
        assert config.budget.warning_threshold == 80
        assert config.budget.on_task_budget_exceeded == "skip"
        assert config.interactive.enabled is False
        assert config.iteration.max_iterations == 5
        assert config.iteration.on_max_iterations == "skip"
        assert config.hooks.pre_task is None
        assert config.consecutive_empty_threshold == 2
        assert config.state_dir == Path(".backlog-runner")

    def test_label_sets(self) -> None:
        sets = RunnerConfig().priority.labels.as_label_sets()

        assert "P0" in sets[Priority.CRITICAL]
        assert "backlog" in sets[Priority.LOW]

    def test_checkpoint_enabled(self) -> None:
        config = RunnerConfig.from_dict(
            {"interactive": {"enabled": True, "approve_phase2": False}}
        )

        assert config.interactive.checkpoint_enabled("pre_task") is False
        assert config.interactive.checkpoint_enabled("phase1") is True
        assert config.interactive.checkpoint_enabled("phase2") is False


class TestLoad:
    """Tests for RunnerConfig.load()."""

    def test_load_yaml(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            """
            github:
              repo: acme/app
              project_number: 7
            budget:
              per_task_limit: 2.5
              on_task_budget_exceeded: fail
            priority:
              labels:
                critical: [sev1]
            """,
        )

        config = RunnerConfig.load(path)

        assert config.github.repo == "acme/app"
        assert config.github.project_number == 7
        assert config.budget.per_task_limit == 2.5
        assert config.budget.on_task_budget_exceeded == "fail"
        assert config.priority.labels.critical == ["sev1"]
        # Unspecified lists keep their defaults
        assert config.priority.labels.high == ["priority:high", "P1"]

    def test_hooks_and_iteration_policy(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path,
            """
            iteration:
              on_max_iterations: retry-later
            hooks:
              pre_task:
                script: hooks/check.sh
                can_abort: true
              post_pr:
                script: /usr/local/bin/announce
                timeout: 5
                enabled: false
            """,
        )

        config = RunnerConfig.load(path)

        assert config.iteration.on_max_iterations == "retry-later"
        assert config.hooks.get("pre_task").script == "hooks/check.sh"
        assert config.hooks.get("pre_task").can_abort is True
        assert config.hooks.get("pre_task").timeout == 30
        assert config.hooks.get("post_pr").enabled is False
        assert config.hooks.get("on_failure") is None

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "")

        assert RunnerConfig.load(path) == RunnerConfig()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RunnerConfig.load(tmp_path / "nope.yaml")

        assert exc_info.value.error_code == "CONF-FileNotFound"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "github: [unclosed")

        with pytest.raises(ConfigurationError) as exc_info:
            RunnerConfig.load(path)

        assert exc_info.value.error_code == "CONF-InvalidYaml"

    def test_non_mapping_root(self, tmp_path: Path) -> None:
        path = write_config(tmp_path, "- a\n- b\n")

        with pytest.raises(ConfigurationError):
            RunnerConfig.load(path)


class TestValidation:
    """Tests for validation errors surfacing as ConfigurationError."""

    @pytest.mark.parametrize(
        "data",
        [
            {"budget": {"per_task_limit": -1}},
            {"budget": {"on_task_budget_exceeded": "explode"}},
            {"budget": {"on_session_budget_exceeded": "continue"}},
            {"budget": {"warning_threshold": 0}},
            {"dependencies": {"patterns": ["depends on", "  "]}},
            {"interactive": {"on_timeout": "maybe"}},
            {"logging": {"level": "LOUD"}},
            {"iteration": {"on_max_iterations": "give-up"}},
            {"hooks": {"pre_task": {"timeout": 5}}},
            {"hooks": {"pre_pr": {"script": "x.sh", "timeout": 0}}},
            {"notifications": {"discord": {"enabled": True}}},
        ],
    )
    def test_invalid_values_rejected(self, data: dict) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RunnerConfig.from_dict(data)

        assert exc_info.value.error_code == "CONF-ValidationFailed"
        assert exc_info.value.details["errors"]

    def test_error_message_names_field(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RunnerConfig.from_dict({"budget": {"per_task_limit": -1}})

        assert "budget.per_task_limit" in str(exc_info.value)

    def test_log_level_normalized(self) -> None:
        assert RunnerConfig.from_dict({"logging": {"level": "debug"}}).logging.level == "DEBUG"


class TestFromEnv:
    """Tests for RunnerConfig.from_env()."""

    def test_env_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = write_config(tmp_path, "poll_interval: 30\n")
        monkeypatch.setenv("BACKLOG_RUNNER_CONFIG", str(path))
        monkeypatch.setenv("BACKLOG_RUNNER_STATE_DIR", str(tmp_path / "state"))
        monkeypatch.setenv("BACKLOG_RUNNER_POLL_INTERVAL", "5")

        config = RunnerConfig.from_env()

        assert config.state_dir == tmp_path / "state"
        assert config.poll_interval == 5.0

    def test_missing_default_file_uses_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("BACKLOG_RUNNER_CONFIG", raising=False)
        monkeypatch.delenv("BACKLOG_RUNNER_STATE_DIR", raising=False)
        monkeypatch.delenv("BACKLOG_RUNNER_POLL_INTERVAL", raising=False)

        assert RunnerConfig.from_env().poll_interval == 10.0

    def test_explicit_missing_path_is_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            RunnerConfig.from_env(tmp_path / "absent.yaml")

    def test_bad_poll_interval(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BACKLOG_RUNNER_POLL_INTERVAL", "soon")

        with pytest.raises(ConfigurationError):
            RunnerConfig.from_env()
