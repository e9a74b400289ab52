from __future__ import annotations

import logging
from typing import Iterable

from settingsforge.models import PERMISSION_CATEGORIES, ConfigFragment, ResolvedConfig
from settingsforge.utils import dedupe_preserve

_log = logging.getLogger("settingsforge.merge")


def merge_into(config: ResolvedConfig, fragment: ConfigFragment) -> ResolvedConfig:
    """Fold one fragment into *config* in place.

    Permissions append then dedupe, hooks append, env/commands/agents override
    by key, and passthrough scalars override only when the fragment sets them.
    """
    for category in PERMISSION_CATEGORIES:
        config.permissions[category] = dedupe_preserve(
            [*config.permissions.get(category, []), *fragment.permissions.get(category)]
        )

    for event, entries in fragment.hooks.items():
        config.hooks.setdefault(event, []).extend(entries)

    for key, value in fragment.env.items():
        config.env[key] = value
        config.sources[f"env.{key}"] = fragment.origin

    for name, spec in fragment.commands.items():
        if name in config.commands:
            _log.debug("command_override name=%s origin=%s", name, fragment.origin)
        config.commands[name] = spec
        config.sources[f"commands.{name}"] = fragment.origin

    for name, agent in fragment.agents.items():
        if name in config.agents:
            _log.debug("agent_override name=%s origin=%s", name, fragment.origin)
        config.agents[name] = agent
        config.sources[f"agents.{name}"] = fragment.origin

    for key, value in fragment.settings.items():
        if value is None:
            continue
        config.settings[key] = value
        config.sources[key] = fragment.origin

    return config


def merge_fragments(fragments: Iterable[ConfigFragment]) -> ResolvedConfig:
    config = ResolvedConfig()
    count = 0
    for fragment in fragments:
        merge_into(config, fragment)
        count += 1
    _log.info(
        "fragments_merged count=%d allow=%d ask=%d deny=%d hook_events=%d env=%d",
        count,
        len(config.permissions["allow"]),
        len(config.permissions["ask"]),
        len(config.permissions["deny"]),
        len(config.hooks),
        len(config.env),
    )
    return config


def replace_config(previous: ResolvedConfig, fragment: ConfigFragment) -> ResolvedConfig:
    """Build the config a transform returned, keeping origins of unchanged values."""
    current = merge_fragments([fragment])
    for key in list(current.sources):
        old_origin = previous.sources.get(key)
        if old_origin is not None and _lookup(previous, key) == _lookup(current, key):
            current.sources[key] = old_origin
    return current


def _lookup(config: ResolvedConfig, key: str) -> object:
    section, _, name = key.partition(".")
    if section == "env" and name:
        return config.env.get(name)
    if section == "commands" and name:
        return config.commands.get(name)
    if section == "agents" and name:
        return config.agents.get(name)
    return config.settings.get(key)
