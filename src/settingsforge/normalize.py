from __future__ import annotations

import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from settingsforge.models import (
    HOOK_EVENTS,
    PASSTHROUGH_FIELDS,
    PERMISSION_CATEGORIES,
    AgentSpec,
    ArtifactSources,
    CommandSpec,
    CompileError,
    ConfigFragment,
    Diagnostic,
    DiagnosticCode,
    HookCommand,
    HookEntry,
    PermissionSet,
)
from settingsforge.utils import has_unsafe_chars, split_csv, strip_unsafe

_log = logging.getLogger("settingsforge.normalize")

_MATCHER_TOOL_RE = re.compile(r"^\s*([A-Za-z][\w-]*)\s*\(")
_WILDCARD_MATCHERS = {"", "*", ".*"}

_STRUCTURAL_FIELDS = (
    "$schema",
    "extends",
    "plugins",
    "permissions",
    "hooks",
    "env",
    "commands",
    "subagents",
)
_HOOK_ENTRY_FIELDS = ("matcher", "command", "timeout", "hooks", "type")
_HOOK_COMMAND_FIELDS = ("type", "command", "timeout")
_COMMAND_SPEC_FIELDS = (
    "content",
    "description",
    "category",
    "argumentHint",
    "model",
    "allowedTools",
)
_AGENT_SPEC_FIELDS = ("name", "description", "tools", "content")


def fold_field_name(name: str) -> str:
    """Case, underscore and dash insensitive key used for alias lookup."""
    return name.strip().lower().replace("_", "").replace("-", "")


def build_field_aliases(extra: Mapping[str, str] | None = None) -> Mapping[str, str]:
    table = {fold_field_name(name): name for name in _STRUCTURAL_FIELDS}
    table.update({fold_field_name(name): name for name in PASSTHROUGH_FIELDS})
    table.update(
        {
            "schema": "$schema",
            "agents": "subagents",
            "environment": "env",
            "slashcommands": "commands",
            "preset": "extends",
        }
    )
    for alias, canonical in (extra or {}).items():
        table[fold_field_name(alias)] = canonical
    return MappingProxyType(table)


DEFAULT_FIELD_ALIASES = build_field_aliases()

_HOOK_EVENT_LOOKUP = {fold_field_name(name): name for name in HOOK_EVENTS}


def normalize_matcher(raw: str | None) -> str:
    """Reduce a matcher to tool level: ``Write(**)`` becomes ``Write``."""
    if raw is None:
        return "*"
    value = raw.strip()
    if value in _WILDCARD_MATCHERS:
        return "*"
    match = _MATCHER_TOOL_RE.match(value)
    if match:
        return match.group(1)
    return value


def canonical_hook_event(name: str) -> str:
    return _HOOK_EVENT_LOOKUP.get(fold_field_name(name), name.strip())


def _type_name(value: Any) -> str:
    return type(value).__name__


def _schema_error(message: str, *, origin: str, field: str) -> CompileError:
    return CompileError(
        Diagnostic.error(
            DiagnosticCode.SCHEMA_VALIDATION_ERROR,
            message,
            origin=origin,
            field=field,
        )
    )


class _FragmentNormalizer:
    def __init__(self, *, origin: str, aliases: Mapping[str, str]) -> None:
        self.origin = origin
        self.aliases = aliases
        self.diagnostics: list[Diagnostic] = []
        self.unknown: list[str] = []

    def _unknown(self, label: str, *, reason: str = "unknown field") -> None:
        self.unknown.append(label)
        self.diagnostics.append(
            Diagnostic.warning(
                DiagnosticCode.UNKNOWN_FIELD,
                f"{self.origin}: {label}: {reason}; ignored",
                origin=self.origin,
                field=label,
            )
        )

    def _fold_keys(
        self, raw: Mapping[str, Any], known: tuple[str, ...], *, label: str
    ) -> dict[str, Any]:
        lookup = {fold_field_name(name): name for name in known}
        out: dict[str, Any] = {}
        for key, value in raw.items():
            key_text = str(key)
            canonical = lookup.get(fold_field_name(key_text))
            if canonical is None:
                self._unknown(f"{label}.{key_text}")
                continue
            out[canonical] = value
        return out

    def _mapping(self, value: Any, *, label: str) -> Mapping[str, Any]:
        if not isinstance(value, Mapping):
            raise _schema_error(
                f"{label} must be a mapping, got {_type_name(value)}",
                origin=self.origin,
                field=label,
            )
        return value

    def _str(self, value: Any, *, label: str, multiline: bool = False) -> str:
        if not isinstance(value, str):
            raise _schema_error(
                f"{label} must be a string, got {_type_name(value)}",
                origin=self.origin,
                field=label,
            )
        return strip_unsafe(value, multiline=multiline)

    def _optional_str(self, value: Any, *, label: str) -> str | None:
        if value is None:
            return None
        text = self._str(value, label=label).strip()
        return text or None

    def str_list(
        self, value: Any, *, label: str, allow_scalar: bool = False
    ) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str) and allow_scalar:
            value = [value]
        if not isinstance(value, list):
            raise _schema_error(
                f"{label} must be a list of strings, got {_type_name(value)}",
                origin=self.origin,
                field=label,
            )
        out: list[str] = []
        for index, item in enumerate(value):
            text = self._str(item, label=f"{label}[{index}]").strip()
            if text:
                out.append(text)
        return out

    def _tool_list(self, value: Any, *, label: str) -> tuple[str, ...] | None:
        if value is None:
            return None
        if isinstance(value, str):
            return tuple(split_csv(strip_unsafe(value)))
        return tuple(self.str_list(value, label=label))

    def sanitize_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return strip_unsafe(value)
        if isinstance(value, list):
            return [self.sanitize_value(item) for item in value]
        if isinstance(value, Mapping):
            return {str(key): self.sanitize_value(item) for key, item in value.items()}
        return value

    def top_level(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for key, value in raw.items():
            key_text = str(key)
            if has_unsafe_chars(key_text):
                self._unknown(
                    repr(key_text), reason="field name contains unsafe characters"
                )
                continue
            canonical = self.aliases.get(fold_field_name(key_text))
            if canonical is None:
                self._unknown(key_text)
                continue
            if canonical in fields:
                _log.debug(
                    "field_alias_override origin=%s field=%s alias=%s",
                    self.origin,
                    canonical,
                    key_text,
                )
            fields[canonical] = value
        return fields

    def permissions(self, value: Any) -> PermissionSet:
        if value is None:
            return PermissionSet()
        raw = self._fold_keys(
            self._mapping(value, label="permissions"),
            PERMISSION_CATEGORIES,
            label="permissions",
        )
        return PermissionSet(
            **{
                category: tuple(
                    self.str_list(raw.get(category), label=f"permissions.{category}")
                )
                for category in PERMISSION_CATEGORIES
            }
        )

    def _timeout(self, value: Any, *, label: str) -> int | float | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _schema_error(
                f"{label} must be a number, got {_type_name(value)}",
                origin=self.origin,
                field=label,
            )
        return value

    def _hook_command(
        self, raw: Any, *, label: str, inherited_timeout: int | float | None
    ) -> HookCommand:
        if isinstance(raw, str):
            return HookCommand(
                executable=strip_unsafe(raw).strip(), timeout=inherited_timeout
            )
        fields = self._fold_keys(
            self._mapping(raw, label=label), _HOOK_COMMAND_FIELDS, label=label
        )
        timeout = self._timeout(fields.get("timeout"), label=f"{label}.timeout")
        return HookCommand(
            executable=self._str(
                fields.get("command", ""), label=f"{label}.command"
            ).strip(),
            timeout=timeout if timeout is not None else inherited_timeout,
            kind=self._str(fields.get("type", "command"), label=f"{label}.type"),
        )

    def hook_entry(self, raw: Any, *, label: str) -> HookEntry:
        fields = self._fold_keys(
            self._mapping(raw, label=label), _HOOK_ENTRY_FIELDS, label=label
        )
        matcher_raw = fields.get("matcher")
        matcher = normalize_matcher(
            None
            if matcher_raw is None
            else self._str(matcher_raw, label=f"{label}.matcher")
        )
        timeout = self._timeout(fields.get("timeout"), label=f"{label}.timeout")
        if "hooks" in fields:
            nested = fields["hooks"]
            if not isinstance(nested, list):
                nested = [nested]
            commands = tuple(
                self._hook_command(
                    item, label=f"{label}.hooks[{index}]", inherited_timeout=timeout
                )
                for index, item in enumerate(nested)
            )
        elif "command" in fields:
            commands = (
                self._hook_command(
                    {
                        "command": fields["command"],
                        "type": fields.get("type", "command"),
                    },
                    label=label,
                    inherited_timeout=timeout,
                ),
            )
        else:
            raise _schema_error(
                f"{label} must define 'command' or 'hooks'",
                origin=self.origin,
                field=label,
            )
        return HookEntry(matcher=matcher, commands=commands)

    def hooks(self, value: Any) -> dict[str, tuple[HookEntry, ...]]:
        if value is None:
            return {}
        out: dict[str, tuple[HookEntry, ...]] = {}
        for event_raw, entries_raw in self._mapping(value, label="hooks").items():
            event = canonical_hook_event(str(event_raw))
            if entries_raw is None:
                continue
            if not isinstance(entries_raw, list):
                entries_raw = [entries_raw]
            entries = [
                self.hook_entry(item, label=f"hooks.{event}[{index}]")
                for index, item in enumerate(entries_raw)
            ]
            out[event] = out.get(event, ()) + tuple(entries)
        return out

    def env(self, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        out: dict[str, str] = {}
        for key, item in self._mapping(value, label="env").items():
            name = str(key)
            if not isinstance(item, str):
                observed = _type_name(item)
                raise CompileError(
                    Diagnostic.error(
                        DiagnosticCode.TYPE_COERCION_ERROR,
                        f"env.{name} must be a string, got {observed}",
                        remediation=f"quote the value of {name} in the config",
                        origin=self.origin,
                        key=name,
                        observed_type=observed,
                    )
                )
            out[name] = strip_unsafe(item)
        return out

    def _argument_hint(self, value: Any, *, label: str) -> str | None:
        if isinstance(value, list):
            items = self.str_list(value, label=label)
            return " ".join(f"[{item}]" for item in items) or None
        return self._optional_str(value, label=label)

    def command_spec(self, name: str, raw: Any, *, label: str) -> CommandSpec:
        if isinstance(raw, str):
            return CommandSpec(name=name, content=strip_unsafe(raw, multiline=True))
        fields = self._fold_keys(
            self._mapping(raw, label=label), _COMMAND_SPEC_FIELDS, label=label
        )
        if "content" not in fields:
            raise _schema_error(
                f"{label}.content is required", origin=self.origin, field=label
            )
        return CommandSpec(
            name=name,
            content=self._str(
                fields["content"], label=f"{label}.content", multiline=True
            ),
            description=self._optional_str(
                fields.get("description"), label=f"{label}.description"
            ),
            category=self._optional_str(
                fields.get("category"), label=f"{label}.category"
            ),
            argument_hint=self._argument_hint(
                fields.get("argumentHint"), label=f"{label}.argumentHint"
            ),
            model=self._optional_str(fields.get("model"), label=f"{label}.model"),
            allowed_tools=self._tool_list(
                fields.get("allowedTools"), label=f"{label}.allowedTools"
            ),
        )

    def agent_spec(self, key: str, raw: Any, *, label: str) -> AgentSpec:
        if isinstance(raw, str):
            return AgentSpec(
                name=key, description="", content=strip_unsafe(raw, multiline=True)
            )
        fields = self._fold_keys(
            self._mapping(raw, label=label), _AGENT_SPEC_FIELDS, label=label
        )
        if "content" not in fields:
            raise _schema_error(
                f"{label}.content is required", origin=self.origin, field=label
            )
        return AgentSpec(
            name=self._optional_str(fields.get("name"), label=f"{label}.name") or key,
            description=self._optional_str(
                fields.get("description"), label=f"{label}.description"
            )
            or "",
            content=self._str(
                fields["content"], label=f"{label}.content", multiline=True
            ),
            tools=self._tool_list(fields.get("tools"), label=f"{label}.tools"),
        )

    def artifact_block(
        self, value: Any, *, field: str, entries_key: str
    ) -> tuple[ArtifactSources, dict[str, Any]]:
        if value is None:
            return ArtifactSources(), {}
        if isinstance(value, (list, str)):
            presets = self.str_list(value, label=field, allow_scalar=True)
            return ArtifactSources(presets=tuple(presets)), {}
        raw = self._mapping(value, label=field)
        fields: dict[str, Any] = {}
        for key, item in raw.items():
            key_text = str(key)
            folded = fold_field_name(key_text)
            if folded in {"presets", "files", entries_key}:
                fields[folded] = item
                continue
            self.unknown.append(f"{field}.{key_text}")
            self.diagnostics.append(
                Diagnostic.warning(
                    DiagnosticCode.UNKNOWN_FIELD,
                    f"{self.origin}: {field}.{key_text}: unknown field; ignored",
                    remediation=(
                        f"place direct definitions under {field}.{entries_key}"
                    ),
                    origin=self.origin,
                    field=f"{field}.{key_text}",
                )
            )
        sources = ArtifactSources(
            presets=tuple(
                self.str_list(
                    fields.get("presets"), label=f"{field}.presets", allow_scalar=True
                )
            ),
            files=tuple(
                self.str_list(
                    fields.get("files"), label=f"{field}.files", allow_scalar=True
                )
            ),
        )
        entries = fields.get(entries_key)
        if entries is None:
            return sources, {}
        return sources, dict(
            self._mapping(entries, label=f"{field}.{entries_key}")
        )


def normalize_fragment(
    raw: Mapping[str, Any],
    *,
    origin: str,
    aliases: Mapping[str, str] = DEFAULT_FIELD_ALIASES,
    base_dir: Path | None = None,
) -> tuple[ConfigFragment, list[Diagnostic]]:
    """Canonicalize one configuration document into a ``ConfigFragment``.

    Structural problems raise ``CompileError``; unknown or unsafe field names
    are dropped and reported as warnings in the returned list.
    """
    if not isinstance(raw, Mapping):
        raise _schema_error(
            f"{origin}: document root must be a mapping, got {_type_name(raw)}",
            origin=origin,
            field="<root>",
        )
    state = _FragmentNormalizer(origin=origin, aliases=aliases)
    fields = state.top_level(raw)

    command_sources, command_entries = state.artifact_block(
        fields.get("commands"), field="commands", entries_key="commands"
    )
    agent_sources, agent_entries = state.artifact_block(
        fields.get("subagents"), field="subagents", entries_key="agents"
    )
    commands = {
        str(name): state.command_spec(
            str(name), item, label=f"commands.commands.{name}"
        )
        for name, item in command_entries.items()
    }
    agents = {
        str(name): state.agent_spec(str(name), item, label=f"subagents.agents.{name}")
        for name, item in agent_entries.items()
    }

    settings: dict[str, Any] = {}
    for name in ("$schema", *PASSTHROUGH_FIELDS):
        value = fields.get(name)
        if value is not None:
            settings[name] = state.sanitize_value(value)

    fragment = ConfigFragment(
        origin=origin,
        extends=tuple(
            state.str_list(fields.get("extends"), label="extends", allow_scalar=True)
        ),
        plugins=tuple(
            state.str_list(fields.get("plugins"), label="plugins", allow_scalar=True)
        ),
        permissions=state.permissions(fields.get("permissions")),
        hooks=state.hooks(fields.get("hooks")),
        env=state.env(fields.get("env")),
        commands=commands,
        agents=agents,
        command_sources=command_sources,
        agent_sources=agent_sources,
        settings=settings,
        unknown_fields=tuple(state.unknown),
        base_dir=base_dir,
    )
    _log.debug(
        "fragment_normalized origin=%s extends=%d hooks=%d env=%d commands=%d agents=%d",
        origin,
        len(fragment.extends),
        sum(len(entries) for entries in fragment.hooks.values()),
        len(fragment.env),
        len(fragment.commands),
        len(fragment.agents),
    )
    return fragment, state.diagnostics


def normalize_hook_entry(raw: Mapping[str, Any], *, origin: str = "<hook>") -> HookEntry:
    state = _FragmentNormalizer(origin=origin, aliases=DEFAULT_FIELD_ALIASES)
    return state.hook_entry(raw, label="hook")


def command_spec_from_source(
    name: str, content: str, metadata: Mapping[str, Any], *, origin: str
) -> CommandSpec:
    """Build a command from a markdown body plus its frontmatter metadata."""
    state = _FragmentNormalizer(origin=origin, aliases=DEFAULT_FIELD_ALIASES)
    known = {
        key: value
        for key, value in metadata.items()
        if fold_field_name(str(key)) in {fold_field_name(f) for f in _COMMAND_SPEC_FIELDS}
    }
    return state.command_spec(name, {**known, "content": content}, label=origin)


def agent_spec_from_source(
    name: str, content: str, metadata: Mapping[str, Any], *, origin: str
) -> AgentSpec:
    state = _FragmentNormalizer(origin=origin, aliases=DEFAULT_FIELD_ALIASES)
    known = {
        key: value
        for key, value in metadata.items()
        if fold_field_name(str(key)) in {fold_field_name(f) for f in _AGENT_SPEC_FIELDS}
    }
    return state.agent_spec(name, {**known, "content": content}, label=origin)
