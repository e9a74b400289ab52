from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


class SettingsForgeError(RuntimeError):
    """Base error for settings compiler failures."""


class ConfigError(SettingsForgeError):
    """Raised when a configuration document is invalid."""


class CompileError(ConfigError):
    """Raised inside the compile pipeline; carries the fatal diagnostic."""

    def __init__(self, diagnostic: "Diagnostic") -> None:
        super().__init__(f"{diagnostic.code}: {diagnostic.message}")
        self.diagnostic = diagnostic


class PresetLookupError(SettingsForgeError):
    """Raised by fragment loaders when a reference cannot be resolved."""

    def __init__(self, reference: str, kind: str, reason: str) -> None:
        super().__init__(f"cannot load {kind} preset '{reference}': {reason}")
        self.reference = reference
        self.kind = kind
        self.reason = reason


class PluginLoadFailure(SettingsForgeError):
    """Raised by plugin loaders when a reference cannot be instantiated."""


SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


class DiagnosticCode:
    CIRCULAR_DEPENDENCY = "CircularDependency"
    PRESET_NOT_FOUND = "PresetNotFound"
    PLUGIN_LOAD_ERROR = "PluginLoadError"
    PLUGIN_TRANSFORM_ERROR = "PluginTransformError"
    PLUGIN_VALIDATE_ERROR = "PluginValidateError"
    PLUGIN_DIAGNOSTIC = "PluginDiagnostic"
    TYPE_COERCION_ERROR = "TypeCoercionError"
    INVALID_PERMISSION_FORMAT = "InvalidPermissionFormat"
    INVALID_HOOK_MATCHER = "InvalidHookMatcher"
    INVALID_ARTIFACT_NAME = "InvalidArtifactName"
    SCHEMA_VALIDATION_ERROR = "SchemaValidationError"
    UNKNOWN_FIELD = "UnknownField"
    PERMISSION_CONFLICT = "PermissionConflict"


DEFAULT_SCHEMA_URL = "https://json.schemastore.org/claude-code-settings.json"

PERMISSION_CATEGORIES = ("allow", "ask", "deny")

HOOK_EVENTS = (
    "PreToolUse",
    "PostToolUse",
    "Notification",
    "UserPromptSubmit",
    "Stop",
    "SubagentStop",
    "PreCompact",
    "SessionStart",
    "SessionEnd",
)

# Canonical emission order for passthrough scalars.
PASSTHROUGH_FIELDS = (
    "model",
    "apiKeyHelper",
    "cleanupPeriodDays",
    "includeCoAuthoredBy",
    "statusLine",
    "forceLoginMethod",
    "forceLoginOrgUUID",
    "enableAllProjectMcpServers",
    "enabledMcpjsonServers",
    "disabledMcpjsonServers",
    "awsAuthRefresh",
    "awsCredentialExport",
)


@dataclass(frozen=True)
class Diagnostic:
    code: str
    message: str
    severity: str = SEVERITY_ERROR
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity == SEVERITY_ERROR

    @classmethod
    def error(
        cls, code: str, message: str, *, remediation: str | None = None, **context: Any
    ) -> "Diagnostic":
        return cls(code, message, SEVERITY_ERROR, dict(context), remediation)

    @classmethod
    def warning(
        cls, code: str, message: str, *, remediation: str | None = None, **context: Any
    ) -> "Diagnostic":
        return cls(code, message, SEVERITY_WARNING, dict(context), remediation)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "severity": self.severity,
            "message": self.message,
        }
        if self.context:
            payload["context"] = dict(self.context)
        if self.remediation:
            payload["remediation"] = self.remediation
        return payload


@dataclass(frozen=True)
class PermissionSet:
    allow: tuple[str, ...] = ()
    ask: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()

    def get(self, category: str) -> tuple[str, ...]:
        return tuple(getattr(self, category))

    def is_empty(self) -> bool:
        return not (self.allow or self.ask or self.deny)


@dataclass(frozen=True)
class HookCommand:
    executable: str
    timeout: int | float | None = None
    kind: str = "command"

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "command": self.executable}
        if self.timeout is not None:
            payload["timeout"] = self.timeout
        return payload


@dataclass(frozen=True)
class HookEntry:
    matcher: str
    commands: tuple[HookCommand, ...]

    def to_json(self) -> dict[str, Any]:
        return {
            "matcher": self.matcher,
            "hooks": [command.to_json() for command in self.commands],
        }


@dataclass(frozen=True)
class CommandSpec:
    name: str
    content: str
    description: str | None = None
    category: str | None = None
    argument_hint: str | None = None
    model: str | None = None
    allowed_tools: tuple[str, ...] | None = None

    @property
    def has_metadata(self) -> bool:
        return bool(
            self.description or self.argument_hint or self.model or self.allowed_tools
        )

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": self.content}
        if self.description is not None:
            payload["description"] = self.description
        if self.category is not None:
            payload["category"] = self.category
        if self.argument_hint is not None:
            payload["argumentHint"] = self.argument_hint
        if self.model is not None:
            payload["model"] = self.model
        if self.allowed_tools is not None:
            payload["allowedTools"] = list(self.allowed_tools)
        return payload


@dataclass(frozen=True)
class AgentSpec:
    name: str
    description: str
    content: str
    tools: tuple[str, ...] | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
        }
        if self.tools is not None:
            payload["tools"] = list(self.tools)
        payload["content"] = self.content
        return payload


@dataclass(frozen=True)
class ArtifactSources:
    presets: tuple[str, ...] = ()
    files: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.presets or self.files)


@dataclass(frozen=True)
class ConfigFragment:
    origin: str
    extends: tuple[str, ...] = ()
    plugins: tuple[str, ...] = ()
    permissions: PermissionSet = field(default_factory=PermissionSet)
    hooks: dict[str, tuple[HookEntry, ...]] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    commands: dict[str, CommandSpec] = field(default_factory=dict)
    agents: dict[str, AgentSpec] = field(default_factory=dict)
    command_sources: ArtifactSources = field(default_factory=ArtifactSources)
    agent_sources: ArtifactSources = field(default_factory=ArtifactSources)
    settings: dict[str, Any] = field(default_factory=dict)
    unknown_fields: tuple[str, ...] = ()
    base_dir: Path | None = None


@dataclass
class ResolvedConfig:
    """Working document threaded through merge, plugins, validation and emission."""

    permissions: dict[str, list[str]] = field(
        default_factory=lambda: {category: [] for category in PERMISSION_CATEGORIES}
    )
    hooks: dict[str, list[HookEntry]] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    commands: dict[str, CommandSpec] = field(default_factory=dict)
    agents: dict[str, AgentSpec] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        """Plain-data view handed to plugin transforms and validators.

        The shape matches the root config input format, so a transform's
        result can go back through the normalizer unchanged.
        """
        document: dict[str, Any] = {
            "permissions": {
                category: list(self.permissions.get(category, []))
                for category in PERMISSION_CATEGORIES
            },
            "hooks": {
                event: [entry.to_json() for entry in entries]
                for event, entries in self.hooks.items()
            },
            "env": dict(self.env),
            "commands": {
                "commands": {
                    name: spec.to_json() for name, spec in self.commands.items()
                }
            },
            "subagents": {
                "agents": {name: spec.to_json() for name, spec in self.agents.items()}
            },
        }
        for key, value in self.settings.items():
            document[key] = value
        return document


@dataclass
class CompileResult:
    document: dict[str, Any] | None
    commands: dict[str, CommandSpec] = field(default_factory=dict)
    agents: dict[str, AgentSpec] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    presets: list[str] = field(default_factory=list)
    plugins: list[str] = field(default_factory=list)
    sources: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.document is not None and not self.errors

    @property
    def errors(self) -> list[Diagnostic]:
        return [item for item in self.diagnostics if item.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [item for item in self.diagnostics if not item.is_error]

    def raise_for_errors(self) -> None:
        errors = self.errors
        if errors:
            raise CompileError(errors[0])

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "settings": self.document,
            "commands": {name: spec.to_json() for name, spec in self.commands.items()},
            "agents": {name: spec.to_json() for name, spec in self.agents.items()},
            "presets": list(self.presets),
            "plugins": list(self.plugins),
            "diagnostics": [item.to_json() for item in self.diagnostics],
        }


def diagnostic_from_mapping(
    raw: Mapping[str, Any], *, default_code: str, default_severity: str
) -> Diagnostic:
    severity = str(raw.get("severity", default_severity)).strip().lower()
    if severity not in {SEVERITY_ERROR, SEVERITY_WARNING}:
        severity = default_severity
    context = raw.get("context")
    return Diagnostic(
        code=str(raw.get("code") or default_code),
        message=str(raw.get("message", "")),
        severity=severity,
        context=dict(context) if isinstance(context, Mapping) else {},
        remediation=(
            str(raw["remediation"]) if raw.get("remediation") is not None else None
        ),
    )
