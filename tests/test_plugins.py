from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any

import pytest

from settingsforge.compiler import Compiler, CompilerOptions
from settingsforge.models import Diagnostic, DiagnosticCode, PluginLoadFailure
from settingsforge.plugins import Plugin


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")


class _StaticLoader:
    def __init__(self, plugins: dict[str, Plugin]) -> None:
        self.plugins = plugins
        self.requested: list[str] = []

    def load(self, reference: str) -> Plugin:
        self.requested.append(reference)
        if reference not in self.plugins:
            raise PluginLoadFailure(f"unknown plugin {reference}")
        return self.plugins[reference]


def _compile(tmp_path: Path, document: dict, plugins: dict[str, Plugin]):
    loader = _StaticLoader(plugins)
    options = CompilerOptions(project_root=tmp_path, plugin_loader=loader)
    return Compiler(options).compile(document), loader


def _set_env(key: str, value: str):
    def transform(config: dict[str, Any]) -> dict[str, Any]:
        config["env"][key] = value
        return config

    return transform


def test_later_plugin_wins_on_env(tmp_path: Path) -> None:
    result, loader = _compile(
        tmp_path,
        {"plugins": ["p1", "p2"]},
        {
            "p1": Plugin(name="p1", reference="p1", transform=_set_env("X", "a")),
            "p2": Plugin(name="p2", reference="p2", transform=_set_env("X", "b")),
        },
    )
    assert result.ok
    assert result.document["env"]["X"] == "b"
    assert result.plugins == ["p1", "p2"]
    assert result.sources["env.X"] == "plugin:p2"
    assert loader.requested == ["p1", "p2"]


def test_load_failure_is_a_warning_and_plugin_is_skipped(tmp_path: Path) -> None:
    result, _ = _compile(
        tmp_path,
        {"plugins": ["missing", "p1"]},
        {"p1": Plugin(name="p1", reference="p1", transform=_set_env("X", "a"))},
    )
    assert result.ok
    assert result.plugins == ["p1"]
    [warning] = result.warnings
    assert warning.code == DiagnosticCode.PLUGIN_LOAD_ERROR
    assert warning.context["reference"] == "missing"


def test_transform_exception_is_fatal(tmp_path: Path) -> None:
    def explode(config: dict[str, Any]) -> dict[str, Any]:
        raise KeyError("boom")

    result, _ = _compile(
        tmp_path,
        {"plugins": ["bad"], "env": {"A": "1"}},
        {"bad": Plugin(name="bad", reference="bad", transform=explode)},
    )
    assert not result.ok
    assert result.document is None
    assert result.errors[0].code == DiagnosticCode.PLUGIN_TRANSFORM_ERROR
    assert result.errors[0].context["plugin"] == "bad"


@pytest.mark.parametrize("returned", [None, ["not", "a", "mapping"]])
def test_transform_must_return_a_mapping(tmp_path: Path, returned: Any) -> None:
    result, _ = _compile(
        tmp_path,
        {"plugins": ["bad"]},
        {"bad": Plugin(name="bad", reference="bad", transform=lambda config: returned)},
    )
    assert result.document is None
    assert result.errors[0].code == DiagnosticCode.PLUGIN_TRANSFORM_ERROR


def test_transform_result_with_bad_env_keeps_type_coercion_code(tmp_path: Path) -> None:
    def bad_env(config: dict[str, Any]) -> dict[str, Any]:
        config["env"]["PORT"] = 8080
        return config

    result, _ = _compile(
        tmp_path,
        {"plugins": ["port"]},
        {"port": Plugin(name="port", reference="port", transform=bad_env)},
    )
    assert result.document is None
    error = result.errors[0]
    assert error.code == DiagnosticCode.TYPE_COERCION_ERROR
    assert error.context["key"] == "PORT"
    assert error.context["plugin"] == "port"


def test_async_transform_is_awaited(tmp_path: Path) -> None:
    async def add_deny(config: dict[str, Any]) -> dict[str, Any]:
        config["permissions"]["deny"].append("WebFetch")
        return config

    result, _ = _compile(
        tmp_path,
        {"plugins": ["async"]},
        {"async": Plugin(name="async", reference="async", transform=add_deny)},
    )
    assert result.document["permissions"]["deny"] == ["WebFetch"]


def test_defaults_fold_before_transform_and_output_is_normalized(
    tmp_path: Path,
) -> None:
    seen: list[list[str]] = []

    def add_hook(config: dict[str, Any]) -> dict[str, Any]:
        seen.append(list(config["permissions"]["allow"]))
        config["hooks"].setdefault("PreToolUse", []).append(
            {"matcher": "Write(**)", "command": "echo audit"}
        )
        return config

    plugin = Plugin(
        name="audit",
        reference="audit",
        transform=add_hook,
        defaults={"permissions": {"allow": ["Grep"]}, "env": {"AUDIT": "1"}},
    )
    result, _ = _compile(
        tmp_path,
        {"plugins": ["audit"], "permissions": {"allow": ["Read"]}},
        {"audit": plugin},
    )
    assert seen == [["Read", "Grep"]]
    assert result.document["env"] == {"AUDIT": "1"}
    assert result.document["hooks"]["PreToolUse"] == [
        {"matcher": "Write", "hooks": [{"type": "command", "command": "echo audit"}]}
    ]


def test_validators_see_final_document_and_report_diagnostics(
    tmp_path: Path,
) -> None:
    seen: list[dict[str, str]] = []

    def check(config: dict[str, Any]) -> list[Any]:
        seen.append(dict(config["env"]))
        config["env"]["MUTATED"] = "yes"
        return ["consider pinning a model", {"message": "structured", "code": "Custom"}]

    result, _ = _compile(
        tmp_path,
        {"plugins": ["checker", "late"]},
        {
            "checker": Plugin(name="checker", reference="checker", validate=check),
            "late": Plugin(name="late", reference="late", transform=_set_env("Y", "1")),
        },
    )
    assert seen == [{"Y": "1"}]
    assert result.ok
    assert "MUTATED" not in result.document["env"]
    codes = [item.code for item in result.warnings]
    assert codes == [DiagnosticCode.PLUGIN_DIAGNOSTIC, "Custom"]
    assert result.warnings[1].context["plugin"] == "checker"


def test_error_severity_validator_blocks_emission(tmp_path: Path) -> None:
    def strict(config: dict[str, Any]) -> list[Diagnostic]:
        return [Diagnostic.error("PolicyViolation", "model must be set")]

    result, _ = _compile(
        tmp_path,
        {"plugins": ["strict"]},
        {"strict": Plugin(name="strict", reference="strict", validate=strict)},
    )
    assert result.document is None
    assert [item.code for item in result.errors] == ["PolicyViolation"]


def test_raising_validator_is_reported_as_warning(tmp_path: Path) -> None:
    def broken(config: dict[str, Any]) -> list[str]:
        raise RuntimeError("validator crashed")

    result, _ = _compile(
        tmp_path,
        {"plugins": ["broken"]},
        {"broken": Plugin(name="broken", reference="broken", validate=broken)},
    )
    assert result.ok
    assert result.warnings[0].code == DiagnosticCode.PLUGIN_VALIDATE_ERROR


def test_from_object_requires_some_capability() -> None:
    with pytest.raises(PluginLoadFailure, match="no transform, validate"):
        Plugin.from_object({"name": "empty"}, reference="empty")
    with pytest.raises(PluginLoadFailure, match="transform must be callable"):
        Plugin.from_object({"transform": "nope"}, reference="x")


def test_python_file_plugin(tmp_path: Path) -> None:
    _write(
        tmp_path / "plugins" / "logger-plugin.py",
        """
name = "logger"
version = "1.2.0"


def transform(config):
    config["env"]["LOG_LEVEL"] = "debug"
    config["hooks"].setdefault("PreToolUse", []).append(
        {"matcher": "Bash(*)", "command": "echo '[AUDIT] bash'"}
    )
    config["permissions"]["allow"].append("Write(**/logs/*.log)")
    return config
""",
    )
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": ["./plugins/logger-plugin.py"]})
    assert result.ok, result.diagnostics
    assert result.plugins == ["logger"]
    assert result.document["env"]["LOG_LEVEL"] == "debug"
    assert result.document["hooks"]["PreToolUse"][0]["matcher"] == "Bash"
    assert "Write(**/logs/*.log)" in result.document["permissions"]["allow"]


def test_declarative_plugin_contributes_defaults(tmp_path: Path) -> None:
    _write(
        tmp_path / "plugins" / "defaults.yaml",
        """
name: team-defaults
permissions:
  deny:
    - Read(**/.env)
commands:
  standup: Summarize yesterday's commits.
""",
    )
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": ["plugins/defaults.yaml"]})
    assert result.ok, result.diagnostics
    assert result.plugins == ["team-defaults"]
    assert result.document["permissions"]["deny"] == ["Read(**/.env)"]
    assert result.commands["standup"].content == "Summarize yesterday's commits."


def test_missing_plugin_file_is_load_error(tmp_path: Path) -> None:
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": ["./plugins/nope.py"]})
    assert result.ok
    assert result.plugins == []
    assert result.warnings[0].code == DiagnosticCode.PLUGIN_LOAD_ERROR


def test_subprocess_plugin_round_trip(tmp_path: Path) -> None:
    script = tmp_path / "guard.py"
    _write(
        script,
        """
import json
import sys

request = json.load(sys.stdin)
action = request["action"]
if action == "describe":
    reply = {"name": "secrets-guard", "capabilities": ["transform", "validate"]}
elif action == "transform":
    config = request["config"]
    config["permissions"]["deny"].append("Write(**/secrets/**)")
    reply = {"config": config}
else:
    reply = {"diagnostics": ["guard active"]}
json.dump(reply, sys.stdout)
""",
    )
    reference = "command:" + " ".join(shlex.quote(part) for part in (sys.executable, str(script)))
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": [reference]})
    assert result.ok, result.diagnostics
    assert result.plugins == ["secrets-guard"]
    assert result.document["permissions"]["deny"] == ["Write(**/secrets/**)"]
    assert [item.message for item in result.warnings] == ["secrets-guard: guard active"]


def test_module_raising_at_import_is_load_error(tmp_path: Path, monkeypatch) -> None:
    _write(tmp_path / "sf_test_plugin_import_fails.py", "raise RuntimeError('boom at import')")
    monkeypatch.syspath_prepend(str(tmp_path))
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": ["sf_test_plugin_import_fails"]})
    assert result.ok
    assert result.plugins == []
    [warning] = result.warnings
    assert warning.code == DiagnosticCode.PLUGIN_LOAD_ERROR
    assert "boom at import" in warning.message


def test_unparseable_command_plugin_is_load_error(tmp_path: Path) -> None:
    options = CompilerOptions(project_root=tmp_path)
    result = Compiler(options).compile({"plugins": ["command:echo 'unterminated"]})
    assert result.ok
    assert result.plugins == []
    assert result.warnings[0].code == DiagnosticCode.PLUGIN_LOAD_ERROR
