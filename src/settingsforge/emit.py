from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from settingsforge.models import (
    PASSTHROUGH_FIELDS,
    PERMISSION_CATEGORIES,
    AgentSpec,
    CommandSpec,
    Diagnostic,
    DiagnosticCode,
    ResolvedConfig,
)
from settingsforge.utils import atomic_write_text

_log = logging.getLogger("settingsforge.emit")

COMMANDS_DIR = "commands"
AGENTS_DIR = "agents"

# A pattern in a stricter category is removed from the looser ones.
_CONFLICT_ORDER = ("deny", "ask", "allow")


@dataclass(frozen=True)
class Artifact:
    relative_path: str
    text: str


def resolve_permission_conflicts(
    permissions: Mapping[str, list[str]],
) -> tuple[dict[str, list[str]], list[Diagnostic]]:
    resolved = {category: list(permissions.get(category, [])) for category in PERMISSION_CATEGORIES}
    diagnostics: list[Diagnostic] = []
    claimed: dict[str, str] = {}
    for category in _CONFLICT_ORDER:
        kept: list[str] = []
        for pattern in resolved[category]:
            winner = claimed.get(pattern)
            if winner is None:
                claimed[pattern] = category
                kept.append(pattern)
                continue
            diagnostics.append(
                Diagnostic.warning(
                    DiagnosticCode.PERMISSION_CONFLICT,
                    f"{pattern!r} is listed in both {winner} and {category}; "
                    f"keeping {winner}",
                    pattern=pattern,
                    kept=winner,
                    dropped=category,
                )
            )
        resolved[category] = kept
    return resolved, diagnostics


def build_document(
    config: ResolvedConfig, *, resolve_conflicts: bool = True
) -> tuple[dict[str, Any], list[Diagnostic]]:
    """Serialize the working config into the output settings document."""
    diagnostics: list[Diagnostic] = []
    if resolve_conflicts:
        permissions, diagnostics = resolve_permission_conflicts(config.permissions)
    else:
        permissions = {
            category: list(config.permissions.get(category, []))
            for category in PERMISSION_CATEGORIES
        }

    document: dict[str, Any] = {}
    if "$schema" in config.settings:
        document["$schema"] = config.settings["$schema"]
    document["permissions"] = permissions
    document["hooks"] = {
        event: [entry.to_json() for entry in entries]
        for event, entries in config.hooks.items()
        if entries
    }
    document["env"] = dict(config.env)
    for name in PASSTHROUGH_FIELDS:
        if config.settings.get(name) is not None:
            document[name] = config.settings[name]
    return document, diagnostics


def _frontmatter(fields: Mapping[str, Any]) -> str:
    header = yaml.safe_dump(
        dict(fields), sort_keys=False, allow_unicode=True, width=10_000
    )
    return f"---\n{header}---\n\n"


def render_command_artifact(spec: CommandSpec) -> Artifact:
    parts = [COMMANDS_DIR]
    if spec.category:
        parts.extend(item for item in spec.category.replace("\\", "/").split("/") if item)
    parts.append(f"{spec.name}.md")
    text = spec.content
    if spec.has_metadata:
        fields: dict[str, Any] = {}
        if spec.description:
            fields["description"] = spec.description
        if spec.argument_hint:
            fields["argument-hint"] = spec.argument_hint
        if spec.model:
            fields["model"] = spec.model
        if spec.allowed_tools:
            fields["allowed-tools"] = ", ".join(spec.allowed_tools)
        text = _frontmatter(fields) + text
    return Artifact("/".join(parts), text if text.endswith("\n") else text + "\n")


def render_agent_artifact(key: str, spec: AgentSpec) -> Artifact:
    fields: dict[str, Any] = {"name": spec.name, "description": spec.description}
    if spec.tools:
        fields["tools"] = ", ".join(spec.tools)
    text = _frontmatter(fields) + spec.content
    return Artifact(
        f"{AGENTS_DIR}/{key}.md", text if text.endswith("\n") else text + "\n"
    )


def render_artifacts(
    commands: Mapping[str, CommandSpec], agents: Mapping[str, AgentSpec]
) -> list[Artifact]:
    artifacts = [render_command_artifact(spec) for spec in commands.values()]
    artifacts.extend(render_agent_artifact(key, spec) for key, spec in agents.items())
    return artifacts


def write_artifacts(artifacts: Iterable[Artifact], out_dir: Path) -> list[Path]:
    written: list[Path] = []
    for artifact in artifacts:
        path = out_dir / artifact.relative_path
        atomic_write_text(path, artifact.text)
        written.append(path)
    _log.info("artifacts_written dir=%s count=%d", out_dir, len(written))
    return written
