"""
Tests for settings loading and precedence.
"""

import pytest

from deployctl.config import DeploymentTarget, DeploySettings, load_config_file, load_settings


class TestDefaults:
    def test_defaults_without_environment(self):
        settings = load_settings(environ={})

        assert settings.project == "app"
        assert settings.target.host == "localhost"
        assert settings.target.user == "deploy"
        assert settings.target.port == 8080
        assert settings.target.path == "/opt/app"
        assert settings.target.environment == "development"
        assert settings.health_max_attempts == 30
        assert settings.health_interval == 2.0
        assert settings.keep_backups == 5
        assert settings.auto_rollback is False

    def test_derived_paths(self):
        settings = load_settings(environ={"DEPLOY_PROJECT": "ggen"})

        assert settings.target.path == "/opt/ggen"
        assert settings.service_name == "ggen"
        assert settings.remote_binary_path == "/opt/ggen/bin/ggen"
        assert settings.target.health_url == "http://localhost:8080/health"
        assert settings.target.metrics_url == "http://localhost:8080/metrics"


class TestEnvironment:
    def test_environment_variables(self):
        settings = load_settings(environ={
            "DEPLOY_HOST": "prod-server",
            "DEPLOY_PORT": "9090",
            "DEPLOY_USER": "svc",
            "DEPLOY_PATH": "/srv/app",
            "SLACK_WEBHOOK_URL": "https://hooks.slack.com/services/T/B/X",
        })

        assert settings.target.address == "svc@prod-server"
        assert settings.target.port == 9090
        assert settings.target.path == "/srv/app"
        assert settings.slack_webhook_url == "https://hooks.slack.com/services/T/B/X"

    def test_production_profile(self):
        settings = load_settings(environ={"GGEN_ENV": "production"})

        assert settings.target.environment == "production"
        assert settings.health_max_attempts == 12
        assert settings.health_interval == 10.0
        assert settings.auto_rollback is True

    def test_cli_env_overrides_variable(self):
        settings = load_settings(environ={"GGEN_ENV": "production"}, environment="staging")

        assert settings.target.environment == "staging"
        assert settings.auto_rollback is False

    def test_bad_port(self):
        with pytest.raises(ValueError, match="DEPLOY_PORT"):
            load_settings(environ={"DEPLOY_PORT": "http"})

    def test_auto_rollback_variable(self):
        settings = load_settings(environ={"DEPLOY_AUTO_ROLLBACK": "yes"})
        assert settings.auto_rollback is True


class TestConfigFile:
    def test_file_values_and_precedence(self, tmp_path):
        config = tmp_path / "deploy.yaml"
        config.write_text(
            "project: ggen\n"
            "keep_backups: 3\n"
            "config_files: [config/app.toml]\n"
            "target:\n"
            "  host: staging-server\n"
            "  port: 8000\n"
            "  ssh_options: ['-p', '2222']\n"
        )

        settings = load_settings(
            environ={"DEPLOY_HOST": "override-host"},
            config_path=str(config),
            overrides={"keep_backups": 7, "auto_rollback": None},
        )

        assert settings.project == "ggen"
        assert settings.target.host == "override-host"
        assert settings.target.port == 8000
        assert settings.target.ssh_options == ("-p", "2222")
        assert settings.config_files == ["config/app.toml"]
        assert settings.keep_backups == 7

    def test_unknown_keys_rejected(self, tmp_path):
        config = tmp_path / "deploy.yaml"
        config.write_text("keep_backup: 3\n")

        with pytest.raises(ValueError, match="keep_backup"):
            load_settings(environ={}, config_path=str(config))

    def test_unknown_target_keys_rejected(self, tmp_path):
        config = tmp_path / "deploy.yaml"
        config.write_text("target:\n  hostname: x\n")

        with pytest.raises(ValueError, match="hostname"):
            load_settings(environ={}, config_path=str(config))

    def test_non_mapping(self, tmp_path):
        config = tmp_path / "deploy.yaml"
        config.write_text("- a\n- b\n")

        with pytest.raises(ValueError):
            load_config_file(str(config))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / "nope.yaml"))


def test_with_overrides_ignores_none():
    target = DeploymentTarget(host="h", user="u", path="/p", port=1)
    settings = DeploySettings(project="x", target=target, keep_backups=5)

    updated = settings.with_overrides(keep_backups=None, auto_rollback=True)

    assert updated.keep_backups == 5
    assert updated.auto_rollback is True
    assert settings.auto_rollback is False
