"""
Rendering of the Velocity proxy's routing file (velocity.toml).

The document is rebuilt from scratch from the registry on every
regeneration; only the [servers] table and the try list depend on
registry contents, everything else is fixed.
"""

import json
import re

from mcm_common.models import MINECRAFT_PORT

VELOCITY_CONFIG_PATH = "/server/velocity.toml"
PROXY_BIND = "0.0.0.0:25577"
PROXY_MOTD = "<aqua>Minecraft Server Network</aqua>"

_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")

ADVANCED_SETTINGS = {
    "compression-threshold": 256,
    "compression-level": -1,
    "login-ratelimit": 3000,
    "connection-timeout": 5000,
    "read-timeout": 30000,
}


def _quote(value: str) -> str:
    # JSON string escaping is valid TOML basic-string escaping
    return json.dumps(value)


def _key(name: str) -> str:
    return name if _BARE_KEY.match(name) else _quote(name)


def build_try_list(names: list[str], default_name: str | None) -> list[str]:
    """Connection order: just the default if one is set, else every server."""
    if default_name:
        return [default_name]
    return list(names)


def render_velocity_config(names: list[str], default_name: str | None = None) -> str:
    """
    Render velocity.toml for the given backend names.

    Args:
        names: Server names in registry order; each routes to name:25565
               over the shared network
        default_name: Name of the default server, or None for no default

    Returns:
        The full TOML document
    """
    lines = [
        "# Generated by mc-cloud-manager. Manual edits are overwritten.",
        'config-version = "2.7"',
        f"bind = {_quote(PROXY_BIND)}",
        f"motd = {_quote(PROXY_MOTD)}",
        "show-max-players = 500",
        "online-mode = true",
        "force-key-authentication = false",
        'player-info-forwarding-mode = "legacy"',
        "",
        "[servers]",
    ]
    for name in names:
        lines.append(f"{_key(name)} = {_quote(f'{name}:{MINECRAFT_PORT}')}")

    try_list = ", ".join(_quote(name) for name in build_try_list(names, default_name))
    lines.append(f"try = [{try_list}]")

    lines.extend(["", "[forced-hosts]", "", "[advanced]"])
    for key, value in ADVANCED_SETTINGS.items():
        lines.append(f"{key} = {value}")

    lines.extend(["", "[query]", "enabled = false", ""])
    return "\n".join(lines)
