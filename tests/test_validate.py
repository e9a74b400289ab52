from __future__ import annotations

from typing import Any

import pytest

from settingsforge.models import (
    DEFAULT_SCHEMA_URL,
    AgentSpec,
    CommandSpec,
    DiagnosticCode,
    HookCommand,
    HookEntry,
    ResolvedConfig,
)
from settingsforge.validate import validate_config


def _codes(config: ResolvedConfig) -> list[tuple[str, str]]:
    return [(item.code, item.severity) for item in validate_config(config)]


def test_schema_marker_is_injected_when_missing() -> None:
    config = ResolvedConfig()
    assert validate_config(config) == []
    assert config.settings["$schema"] == DEFAULT_SCHEMA_URL


def test_foreign_schema_marker_is_an_error() -> None:
    config = ResolvedConfig(settings={"$schema": "https://example.com/other.json"})
    assert _codes(config) == [(DiagnosticCode.SCHEMA_VALIDATION_ERROR, "error")]


@pytest.mark.parametrize(
    "pattern",
    [
        "Read",
        "Bash(npm run *)",
        "Write(**/secrets/**)",
        "mcp__github__list_prs",
        "WebFetch(domain:example.com)",
    ],
)
def test_valid_permission_patterns(pattern: str) -> None:
    config = ResolvedConfig()
    config.permissions["allow"].append(pattern)
    assert validate_config(config) == []


@pytest.mark.parametrize("pattern", ["read(**)", "Bash(", "", "Bash (ls)", "*"])
def test_invalid_permission_patterns(pattern: str) -> None:
    config = ResolvedConfig()
    config.permissions["deny"].append(pattern)
    [diagnostic] = validate_config(config)
    assert diagnostic.code == DiagnosticCode.INVALID_PERMISSION_FORMAT
    assert diagnostic.context == {"category": "deny", "index": 0, "value": pattern}


def test_hook_checks() -> None:
    config = ResolvedConfig(
        hooks={
            "PreToolUse": [
                HookEntry("Write(**)", (HookCommand("echo"),)),
                HookEntry("Bash", (HookCommand("echo", timeout=-1),)),
                HookEntry("Bash", (HookCommand("", kind="script"),)),
            ],
            "OnSave": [HookEntry("*", (HookCommand("echo"),))],
        }
    )
    assert _codes(config) == [
        (DiagnosticCode.INVALID_HOOK_MATCHER, "error"),
        (DiagnosticCode.SCHEMA_VALIDATION_ERROR, "error"),
        (DiagnosticCode.SCHEMA_VALIDATION_ERROR, "error"),
        (DiagnosticCode.SCHEMA_VALIDATION_ERROR, "error"),
        (DiagnosticCode.UNKNOWN_FIELD, "warning"),
    ]


def test_env_values_must_be_strings() -> None:
    config = ResolvedConfig(env={"PORT": 8080})  # type: ignore[dict-item]
    [diagnostic] = validate_config(config)
    assert diagnostic.code == DiagnosticCode.TYPE_COERCION_ERROR
    assert diagnostic.context["key"] == "PORT"


def test_artifact_names() -> None:
    config = ResolvedConfig(
        commands={
            "a/b": CommandSpec("a/b", "x"),
            "Hello": CommandSpec("Hello", "x"),
            "hello": CommandSpec("hello", "x"),
            "escape": CommandSpec("escape", "x", category="../outside"),
        },
        agents={"reviewer": AgentSpec("reviewer", "", "Review code.")},
    )
    assert _codes(config) == [
        (DiagnosticCode.INVALID_ARTIFACT_NAME, "error"),
        (DiagnosticCode.INVALID_ARTIFACT_NAME, "warning"),
        (DiagnosticCode.INVALID_ARTIFACT_NAME, "error"),
        (DiagnosticCode.SCHEMA_VALIDATION_ERROR, "warning"),
    ]


@pytest.mark.parametrize(
    "settings",
    [
        {"statusLine": {"type": "static"}},
        {"statusLine": {"type": "command"}},
        {"statusLine": {"type": "banner", "value": "x"}},
        {"statusLine": "plain"},
        {"cleanupPeriodDays": "30"},
        {"cleanupPeriodDays": -1},
        {"includeCoAuthoredBy": "yes"},
        {"forceLoginMethod": "sso"},
        {"enabledMcpjsonServers": "github"},
        {"model": 4},
    ],
)
def test_invalid_passthrough_settings(settings: dict[str, Any]) -> None:
    config = ResolvedConfig(settings=dict(settings))
    assert _codes(config) == [(DiagnosticCode.SCHEMA_VALIDATION_ERROR, "error")]


def test_valid_passthrough_settings() -> None:
    config = ResolvedConfig(
        settings={
            "model": "claude-sonnet",
            "cleanupPeriodDays": 14,
            "includeCoAuthoredBy": False,
            "statusLine": {"type": "command", "command": "~/.status.sh"},
            "forceLoginMethod": "console",
            "enabledMcpjsonServers": ["github"],
        }
    )
    assert validate_config(config) == []
