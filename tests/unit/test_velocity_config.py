"""
Unit tests for the Velocity routing document renderer.

The rendered text is parsed back with tomllib so the checks are about the
document's meaning, not its whitespace.
"""

import tomllib

from mcm_controller.velocity_config import build_try_list, render_velocity_config


def parse(document: str) -> dict:
    return tomllib.loads(document)


def test_servers_map_to_internal_port():
    config = parse(render_velocity_config(["alpha", "beta"]))

    servers = dict(config["servers"])
    servers.pop("try")
    assert servers == {"alpha": "alpha:25565", "beta": "beta:25565"}


def test_try_list_without_default_is_every_server():
    config = parse(render_velocity_config(["alpha", "beta", "gamma"]))

    assert config["servers"]["try"] == ["alpha", "beta", "gamma"]


def test_try_list_with_default_is_only_the_default():
    config = parse(render_velocity_config(["alpha", "beta"], default_name="beta"))

    assert config["servers"]["try"] == ["beta"]
    assert config["servers"]["alpha"] == "alpha:25565"


def test_empty_registry_renders_valid_document():
    config = parse(render_velocity_config([]))

    assert config["servers"] == {"try": []}


def test_fixed_settings():
    """Test the parts of the document that never depend on the registry."""
    config = parse(render_velocity_config(["alpha"]))

    assert config["config-version"] == "2.7"
    assert config["bind"] == "0.0.0.0:25577"
    assert config["online-mode"] is True
    assert config["player-info-forwarding-mode"] == "legacy"
    assert config["show-max-players"] == 500
    assert config["forced-hosts"] == {}
    assert config["advanced"] == {
        "compression-threshold": 256,
        "compression-level": -1,
        "login-ratelimit": 3000,
        "connection-timeout": 5000,
        "read-timeout": 30000,
    }
    assert config["query"] == {"enabled": False}


def test_build_try_list():
    assert build_try_list(["a", "b"], None) == ["a", "b"]
    assert build_try_list(["a", "b"], "b") == ["b"]
    assert build_try_list([], None) == []
