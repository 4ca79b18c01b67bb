from pathlib import Path

import pytest

from tusk_deploy import config as mod
from tusk_deploy.errors import PrerequisiteError


def test_defaults_without_any_layer(tmp_path):
    cfg = mod.load_config(environ={"TUSK_CONFIG_FILE": ""}, overrides={"credentials_file": tmp_path / "c"})

    assert cfg.identity == "opentusk"
    assert cfg.gateway_port == 18789
    assert cfg.dashboard_port == 18791
    assert cfg.webhook_port == 18792
    assert cfg.dashboard_enabled is False
    assert cfg.gateway_config_path == "/home/openclaw/.openclaw/openclaw.json"


def test_layers_apply_in_order(tmp_path):
    config_file = tmp_path / "config.env"
    config_file.write_text(
        "TUSK_IDENTITY=from-file\n"
        "TUSK_REGION=eu-west-1\n"
        "TUSK_INSTANCE_TYPE=t3.large\n"
        "TUSK_SECURITY_GROUP_IDS=sg-1, sg-2\n"
        "TUSK_MESH_ENABLED=yes\n"
    )
    env = {"TUSK_REGION": "us-east-2", "TUSK_GATEWAY_PORT": "19000", "UNRELATED": "x"}

    cfg = mod.load_config(config_file, environ=env, overrides={"identity": "from-cli", "region": None})

    assert cfg.identity == "from-cli"
    assert cfg.region == "us-east-2"
    assert cfg.instance_type == "t3.large"
    assert cfg.security_group_ids == ("sg-1", "sg-2")
    assert cfg.mesh_enabled is True
    assert cfg.gateway_port == 19000
    assert cfg.config_file == config_file


def test_missing_config_file_is_a_prerequisite_error(tmp_path):
    with pytest.raises(PrerequisiteError) as exc:
        mod.load_config(tmp_path / "nope.env", environ={})
    assert "config file not found" in exc.value.message


def test_unparseable_value_names_the_key():
    with pytest.raises(PrerequisiteError) as exc:
        mod.load_config(environ={"TUSK_GATEWAY_PORT": "eighty"})
    assert "TUSK_GATEWAY_PORT" in exc.value.message


def test_webhook_requires_dashboard():
    with pytest.raises(PrerequisiteError) as exc:
        mod.load_config(environ={"TUSK_WEBHOOK_ENABLED": "true"})
    assert "TUSK_DASHBOARD_REPO" in exc.value.message


def test_unknown_override_rejected():
    with pytest.raises(ValueError):
        mod.load_config(environ={}, overrides={"nonsense": 1})


def test_ssh_repo_detection():
    assert mod.DeployConfig(dashboard_repo="git@github.com:example/poseidon.git").dashboard_repo_uses_ssh
    assert not mod.DeployConfig(dashboard_repo="https://github.com/example/poseidon.git").dashboard_repo_uses_ssh


def test_mesh_auth_key_not_in_repr():
    cfg = mod.DeployConfig(mesh_auth_key="tskey-auth-secret")
    assert "tskey-auth-secret" not in repr(cfg)


def test_credentials_file_expands_user(monkeypatch):
    monkeypatch.setenv("HOME", "/home/operator")
    cfg = mod.load_config(environ={"TUSK_CREDENTIALS_FILE": "~/creds"})
    assert cfg.credentials_file == Path("/home/operator/creds")
