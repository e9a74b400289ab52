from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from settingsforge.models import (
    DEFAULT_SCHEMA_URL,
    HOOK_EVENTS,
    PERMISSION_CATEGORIES,
    Diagnostic,
    DiagnosticCode,
    ResolvedConfig,
)

_log = logging.getLogger("settingsforge.validate")

PERMISSION_PATTERN_RE = re.compile(r"^(?:[A-Z][A-Za-z0-9]*|mcp__[\w-]+)(?:\(.*\))?$")
STATUS_LINE_TYPES = ("command", "static")
LOGIN_METHODS = ("claudeai", "console")

_STRING_SETTINGS = (
    "model",
    "apiKeyHelper",
    "forceLoginOrgUUID",
    "awsAuthRefresh",
    "awsCredentialExport",
)
_BOOL_SETTINGS = ("includeCoAuthoredBy", "enableAllProjectMcpServers")
_STRING_LIST_SETTINGS = ("enabledMcpjsonServers", "disabledMcpjsonServers")


def _schema_error(message: str, **context: Any) -> Diagnostic:
    return Diagnostic.error(DiagnosticCode.SCHEMA_VALIDATION_ERROR, message, **context)


def _check_permissions(config: ResolvedConfig) -> Iterable[Diagnostic]:
    for category in PERMISSION_CATEGORIES:
        for index, pattern in enumerate(config.permissions.get(category, [])):
            if not isinstance(pattern, str) or not PERMISSION_PATTERN_RE.match(pattern):
                yield Diagnostic.error(
                    DiagnosticCode.INVALID_PERMISSION_FORMAT,
                    f"permissions.{category}[{index}] {pattern!r} is not of the form "
                    "Tool or Tool(pattern)",
                    remediation="start with a capitalized tool name, e.g. Bash(npm *)",
                    category=category,
                    index=index,
                    value=pattern,
                )


def _check_hooks(config: ResolvedConfig) -> Iterable[Diagnostic]:
    for event, entries in config.hooks.items():
        if event not in HOOK_EVENTS:
            yield Diagnostic.warning(
                DiagnosticCode.UNKNOWN_FIELD,
                f"hooks.{event} is not a known hook event",
                remediation=f"use one of {', '.join(HOOK_EVENTS)}",
                field=f"hooks.{event}",
            )
        for index, entry in enumerate(entries):
            label = f"hooks.{event}[{index}]"
            if "(" in entry.matcher or not entry.matcher.strip():
                yield Diagnostic.error(
                    DiagnosticCode.INVALID_HOOK_MATCHER,
                    f"{label}.matcher {entry.matcher!r} must be a tool name",
                    remediation="hook matchers select tools only, drop the (...) part",
                    field=label,
                    value=entry.matcher,
                )
            if not entry.commands:
                yield _schema_error(f"{label} has no commands", field=label)
            for position, command in enumerate(entry.commands):
                command_label = f"{label}.hooks[{position}]"
                if command.kind != "command":
                    yield _schema_error(
                        f"{command_label}.type must be 'command', got {command.kind!r}",
                        field=command_label,
                    )
                if not command.executable.strip():
                    yield _schema_error(
                        f"{command_label}.command must be non-empty",
                        field=command_label,
                    )
                timeout = command.timeout
                if timeout is not None and (
                    isinstance(timeout, bool)
                    or not isinstance(timeout, (int, float))
                    or timeout <= 0
                ):
                    yield _schema_error(
                        f"{command_label}.timeout must be a positive number",
                        field=command_label,
                        value=timeout,
                    )


def _check_env(config: ResolvedConfig) -> Iterable[Diagnostic]:
    for key, value in config.env.items():
        if not isinstance(value, str):
            yield Diagnostic.error(
                DiagnosticCode.TYPE_COERCION_ERROR,
                f"env.{key} must be a string, got {type(value).__name__}",
                key=key,
                observed_type=type(value).__name__,
            )


def _bad_artifact_name(name: str) -> bool:
    stripped = name.strip()
    return (
        not stripped
        or stripped in {".", ".."}
        or "/" in stripped
        or "\\" in stripped
    )


def _check_artifact_names(kind: str, names: Iterable[str]) -> Iterable[Diagnostic]:
    seen: dict[str, str] = {}
    for name in names:
        if _bad_artifact_name(name):
            yield Diagnostic.error(
                DiagnosticCode.INVALID_ARTIFACT_NAME,
                f"{kind} name {name!r} must be non-empty and contain no path separators",
                kind=kind,
                name=name,
            )
            continue
        folded = name.strip().lower()
        if folded in seen:
            yield Diagnostic.warning(
                DiagnosticCode.INVALID_ARTIFACT_NAME,
                f"{kind} names {seen[folded]!r} and {name!r} collide on "
                "case-insensitive filesystems",
                kind=kind,
                name=name,
            )
        else:
            seen[folded] = name


def _check_artifacts(config: ResolvedConfig) -> Iterable[Diagnostic]:
    yield from _check_artifact_names("command", config.commands)
    yield from _check_artifact_names("agent", config.agents)
    for name, spec in config.commands.items():
        category = spec.category
        if category and (
            category.startswith(("/", "\\"))
            or ".." in category.replace("\\", "/").split("/")
        ):
            yield Diagnostic.error(
                DiagnosticCode.INVALID_ARTIFACT_NAME,
                f"command {name!r} category {category!r} must be a relative path",
                kind="command",
                name=name,
            )
    for name, agent in config.agents.items():
        if not agent.description.strip():
            yield Diagnostic.warning(
                DiagnosticCode.SCHEMA_VALIDATION_ERROR,
                f"agent {name!r} has no description; it will never be auto-selected",
                remediation="add a description saying when the agent should be used",
                field=f"subagents.agents.{name}.description",
            )


def _check_status_line(value: Any) -> Iterable[Diagnostic]:
    if not isinstance(value, dict):
        yield _schema_error("statusLine must be a mapping", field="statusLine")
        return
    kind = value.get("type")
    if kind not in STATUS_LINE_TYPES:
        yield _schema_error(
            f"statusLine.type must be one of {list(STATUS_LINE_TYPES)}, got {kind!r}",
            field="statusLine.type",
        )
    elif kind == "command" and not isinstance(value.get("command"), str):
        yield _schema_error(
            "statusLine.command is required when type is 'command'",
            field="statusLine.command",
        )
    elif kind == "static" and not isinstance(value.get("value", value.get("text")), str):
        yield _schema_error(
            "statusLine.value is required when type is 'static'",
            field="statusLine.value",
        )


def _check_settings(config: ResolvedConfig) -> Iterable[Diagnostic]:
    settings = config.settings
    for name in _STRING_SETTINGS:
        if name in settings and not isinstance(settings[name], str):
            yield _schema_error(f"{name} must be a string", field=name)
    for name in _BOOL_SETTINGS:
        if name in settings and not isinstance(settings[name], bool):
            yield _schema_error(f"{name} must be a boolean", field=name)
    for name in _STRING_LIST_SETTINGS:
        if name in settings:
            value = settings[name]
            if not isinstance(value, list) or not all(
                isinstance(item, str) for item in value
            ):
                yield _schema_error(f"{name} must be a list of strings", field=name)
    if "cleanupPeriodDays" in settings:
        days = settings["cleanupPeriodDays"]
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            yield _schema_error(
                "cleanupPeriodDays must be a non-negative integer",
                field="cleanupPeriodDays",
                value=days,
            )
    if "forceLoginMethod" in settings and settings["forceLoginMethod"] not in LOGIN_METHODS:
        yield _schema_error(
            f"forceLoginMethod must be one of {list(LOGIN_METHODS)}",
            field="forceLoginMethod",
            value=settings["forceLoginMethod"],
        )
    if "statusLine" in settings:
        yield from _check_status_line(settings["statusLine"])


def validate_config(
    config: ResolvedConfig, *, schema_url: str = DEFAULT_SCHEMA_URL
) -> list[Diagnostic]:
    """Check the final config against the output schema.

    Injects the ``$schema`` marker when it is missing.
    """
    marker = config.settings.get("$schema")
    diagnostics: list[Diagnostic] = []
    if marker is None:
        config.settings["$schema"] = schema_url
        config.sources.setdefault("$schema", "<default>")
    elif marker != schema_url:
        diagnostics.append(
            _schema_error(
                f"$schema must be {schema_url!r}, got {marker!r}",
                remediation="remove $schema to use the default marker",
                field="$schema",
                value=marker,
            )
        )
    diagnostics.extend(_check_permissions(config))
    diagnostics.extend(_check_hooks(config))
    diagnostics.extend(_check_env(config))
    diagnostics.extend(_check_artifacts(config))
    diagnostics.extend(_check_settings(config))
    _log.info(
        "config_validated errors=%d warnings=%d",
        sum(1 for item in diagnostics if item.is_error),
        sum(1 for item in diagnostics if not item.is_error),
    )
    return diagnostics
