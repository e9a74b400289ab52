from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from settingsforge import Compiler, CompilerOptions, compile_config
from settingsforge.compiler import find_config_file, load_config_document
from settingsforge.models import (
    DEFAULT_SCHEMA_URL,
    CompileError,
    ConfigError,
    DiagnosticCode,
    PluginLoadFailure,
)
from settingsforge.plugins import Plugin


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")


class _StaticLoader:
    def __init__(self, plugins: dict[str, Plugin]) -> None:
        self.plugins = plugins

    def load(self, reference: str) -> Plugin:
        if reference not in self.plugins:
            raise PluginLoadFailure(f"unknown plugin {reference}")
        return self.plugins[reference]


def _deny_secrets(config: dict[str, Any]) -> dict[str, Any]:
    config["permissions"]["deny"].append("Write(**/secrets/**)")
    return config


def test_end_to_end_extends_plugin_and_command(tmp_path: Path) -> None:
    options = CompilerOptions(
        project_root=tmp_path,
        builtin_presets={"base": {"permissions": {"allow": ["Read(**)"]}}},
        plugin_loader=_StaticLoader(
            {
                "secrets-guard": Plugin(
                    name="secrets-guard",
                    reference="secrets-guard",
                    transform=_deny_secrets,
                )
            }
        ),
    )
    result = Compiler(options).compile(
        {
            "extends": "base",
            "plugins": ["secrets-guard"],
            "commands": {"commands": {"hello": "Say hello"}},
        }
    )
    assert result.ok, result.diagnostics
    assert "Read(**)" in result.document["permissions"]["allow"]
    assert "Write(**/secrets/**)" in result.document["permissions"]["deny"]
    assert list(result.commands) == ["hello"]
    assert result.commands["hello"].content == "Say hello"
    assert result.document["$schema"] == DEFAULT_SCHEMA_URL
    assert "commands" not in result.document
    assert result.presets == ["base"]
    assert result.plugins == ["secrets-guard"]


def test_non_string_env_produces_no_document(tmp_path: Path) -> None:
    result = Compiler(CompilerOptions(project_root=tmp_path)).compile(
        {"env": {"FOO": 42}}
    )
    assert result.document is None
    assert not result.ok
    [error] = result.errors
    assert error.code == DiagnosticCode.TYPE_COERCION_ERROR
    assert error.context["key"] == "FOO"
    with pytest.raises(CompileError, match="FOO"):
        result.raise_for_errors()


def test_diamond_keeps_first_visit_precedence(tmp_path: Path) -> None:
    options = CompilerOptions(
        project_root=tmp_path,
        builtin_presets={
            "base": {"model": "base-model", "permissions": {"allow": ["Read"]}},
            "left": {"extends": "base", "model": "left-model"},
            "right": {"extends": "base", "permissions": {"allow": ["Read", "Grep"]}},
        },
    )
    result = Compiler(options).compile({"extends": ["left", "right"]})
    assert result.ok
    assert result.presets == ["base", "left", "right"]
    assert result.document["model"] == "left-model"
    assert result.document["permissions"]["allow"] == ["Read", "Grep"]


def test_cycle_fails_with_no_output(tmp_path: Path) -> None:
    options = CompilerOptions(
        project_root=tmp_path,
        builtin_presets={
            "A": {"extends": "B"},
            "B": {"extends": "C"},
            "C": {"extends": "A"},
        },
    )
    result = Compiler(options).compile({"extends": "A"})
    assert result.document is None
    assert result.errors[0].code == DiagnosticCode.CIRCULAR_DEPENDENCY
    assert result.errors[0].context["cycle"] == ["A", "B", "C", "A"]


def test_validation_errors_block_emission(tmp_path: Path) -> None:
    result = Compiler(CompilerOptions(project_root=tmp_path)).compile(
        {"permissions": {"allow": ["read everything"]}}
    )
    assert result.document is None
    assert result.errors[0].code == DiagnosticCode.INVALID_PERMISSION_FORMAT


def test_artifact_precedence_presets_then_files_then_direct(tmp_path: Path) -> None:
    _write(tmp_path / "cmds" / "bye.md", "bye from file")
    _write(
        tmp_path / "cmds" / "deploy.md",
        """
---
description: Deploy the app
argument-hint: [env]
allowed-tools: Bash(make deploy), Read
---

Run the deploy for $ARGUMENTS.
""",
    )
    _write(tmp_path / "cmds" / "notes.txt", "ignored")
    _write(
        tmp_path / "agents" / "reviewer.md",
        """
---
description: Reviews pull requests
tools: Read, Grep
---
Review carefully.
""",
    )
    options = CompilerOptions(
        project_root=tmp_path,
        builtin_presets={
            "pack": {
                "commands": {
                    "commands": {
                        "hello": "from preset",
                        "bye": "bye from preset",
                        "only": "preset only",
                    }
                }
            }
        },
    )
    result = Compiler(options).compile(
        {
            "commands": {
                "presets": ["pack"],
                "files": ["cmds/*"],
                "commands": {"hello": "direct"},
            },
            "subagents": {"files": ["agents/*.md"]},
        }
    )
    assert result.ok, result.diagnostics
    assert result.commands["hello"].content == "direct"
    assert result.commands["bye"].content == "bye from file\n"
    assert result.commands["only"].content == "preset only"
    assert "notes" not in result.commands
    deploy = result.commands["deploy"]
    assert deploy.description == "Deploy the app"
    assert deploy.argument_hint == "[env]"
    assert deploy.allowed_tools == ("Bash(make deploy)", "Read")
    assert deploy.content == "Run the deploy for $ARGUMENTS.\n"
    reviewer = result.agents["reviewer"]
    assert reviewer.description == "Reviews pull requests"
    assert reviewer.tools == ("Read", "Grep")
    assert reviewer.content == "Review carefully.\n"


def test_unknown_command_preset_is_preset_not_found(tmp_path: Path) -> None:
    result = Compiler(CompilerOptions(project_root=tmp_path)).compile(
        {"commands": ["./missing-commands.yaml"]}
    )
    assert result.document is None
    error = result.errors[0]
    assert error.code == DiagnosticCode.PRESET_NOT_FOUND
    assert error.context["field"] == "commands.presets"


def test_compile_file_discovers_root_config(tmp_path: Path) -> None:
    _write(
        tmp_path / "presets" / "base.yaml",
        """
permissions:
  allow:
    - Read(**)
env:
  STAGE: base
""",
    )
    _write(
        tmp_path / ".settingsforge.yaml",
        """
extends: ./presets/base.yaml
env:
  STAGE: project
hooks:
  PostToolUse:
    - matcher: Edit(**/*.py)
      command: ruff format
      timeout: 30
""",
    )
    assert find_config_file(tmp_path) == tmp_path / ".settingsforge.yaml"
    result = compile_config(
        tmp_path / ".settingsforge.yaml", CompilerOptions(project_root=tmp_path)
    )
    assert result.ok, result.diagnostics
    assert result.document["env"] == {"STAGE": "project"}
    assert result.document["hooks"]["PostToolUse"] == [
        {
            "matcher": "Edit",
            "hooks": [{"type": "command", "command": "ruff format", "timeout": 30}],
        }
    ]
    assert result.sources["env.STAGE"] == ".settingsforge.yaml"


def test_root_config_can_be_part_of_a_cycle(tmp_path: Path) -> None:
    _write(tmp_path / ".settingsforge.yaml", "extends: ./presets/team.yaml")
    _write(tmp_path / "presets" / "team.yaml", "extends: ../.settingsforge.yaml")
    result = Compiler(CompilerOptions(project_root=tmp_path)).compile_file()
    assert result.errors[0].code == DiagnosticCode.CIRCULAR_DEPENDENCY
    assert result.errors[0].context["cycle"] == [
        ".settingsforge.yaml",
        "./presets/team.yaml",
        "../.settingsforge.yaml",
    ]


def test_compiles_are_independent(tmp_path: Path) -> None:
    compiler = Compiler(
        CompilerOptions(
            project_root=tmp_path,
            builtin_presets={"base": {"env": {"A": "1"}}},
        )
    )
    first = compiler.compile({"extends": "base", "env": {"B": "2"}})
    second = compiler.compile({"extends": "base"})
    assert first.document["env"] == {"A": "1", "B": "2"}
    assert second.document["env"] == {"A": "1"}


def test_load_config_document_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config_document(tmp_path / "missing.yaml")
    _write(tmp_path / "list.yaml", "- a\n- b")
    with pytest.raises(ConfigError, match="config root must be a mapping"):
        load_config_document(tmp_path / "list.yaml")
    _write(tmp_path / "broken.json", "{not json")
    with pytest.raises(ConfigError, match="Failed parsing config"):
        load_config_document(tmp_path / "broken.json")
    with pytest.raises(ConfigError, match="No config file found"):
        find_config_file(tmp_path)


def test_undecodable_command_file_does_not_abort_compile(tmp_path: Path) -> None:
    _write(tmp_path / "cmds" / "ok.md", "all good")
    (tmp_path / "cmds" / "bad.md").write_bytes(b"\xff\xfe")
    result = Compiler(CompilerOptions(project_root=tmp_path)).compile(
        {"commands": {"files": ["cmds/*.md"]}}
    )
    assert result.ok, result.diagnostics
    assert list(result.commands) == ["ok"]
