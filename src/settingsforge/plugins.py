from __future__ import annotations

import asyncio
import copy
import importlib
import importlib.util
import inspect
import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

import yaml

from settingsforge.merge import merge_into, replace_config
from settingsforge.models import (
    SEVERITY_WARNING,
    CompileError,
    ConfigFragment,
    Diagnostic,
    DiagnosticCode,
    PluginLoadFailure,
    ResolvedConfig,
    diagnostic_from_mapping,
)

_log = logging.getLogger("settingsforge.plugins")

COMMAND_PREFIX = "command:"
_DEFAULT_FIELDS = ("permissions", "hooks", "env", "commands")
_DECLARATIVE_SUFFIXES = (".yaml", ".yml", ".json")

# (raw document, origin) -> normalized fragment plus warnings
Refiner = Callable[[Mapping[str, Any], str], "tuple[ConfigFragment, list[Diagnostic]]"]


@dataclass(frozen=True)
class Plugin:
    name: str
    reference: str
    version: str | None = None
    transform: Callable[[dict[str, Any]], Any] | None = None
    validate: Callable[[dict[str, Any]], Any] | None = None
    defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def origin(self) -> str:
        return f"plugin:{self.name}"

    def defaults_document(self) -> dict[str, Any]:
        document = {key: value for key, value in self.defaults.items() if key != "commands"}
        if "commands" in self.defaults:
            document["commands"] = {"commands": self.defaults["commands"]}
        return document

    @classmethod
    def from_object(cls, obj: Any, *, reference: str) -> "Plugin":
        """Build a plugin from a mapping, module, class or instance."""
        if isinstance(obj, Plugin):
            return obj
        if isinstance(obj, type):
            try:
                obj = obj()
            except Exception as exc:
                raise PluginLoadFailure(
                    f"cannot instantiate plugin class {obj.__name__}: {exc}"
                ) from exc

        def _get(key: str) -> Any:
            if isinstance(obj, Mapping):
                return obj.get(key)
            return getattr(obj, key, None)

        transform = _get("transform")
        validate = _get("validate")
        for label, value in (("transform", transform), ("validate", validate)):
            if value is not None and not callable(value):
                raise PluginLoadFailure(f"plugin {label} must be callable")
        defaults = {key: _get(key) for key in _DEFAULT_FIELDS if _get(key) is not None}
        if transform is None and validate is None and not defaults:
            raise PluginLoadFailure(
                "plugin defines no transform, validate or default contributions"
            )
        name = _get("name")
        version = _get("version")
        return cls(
            name=str(name) if name else _default_name(reference),
            reference=reference,
            version=str(version) if version is not None else None,
            transform=transform,
            validate=validate,
            defaults=defaults,
        )


def _default_name(reference: str) -> str:
    if reference.startswith(COMMAND_PREFIX):
        argv = shlex.split(reference[len(COMMAND_PREFIX) :])
        return Path(argv[0]).name if argv else reference
    if "/" in reference or reference.endswith((".py", *_DECLARATIVE_SUFFIXES)):
        return Path(reference).stem
    return reference.split(":", 1)[0]


class PluginLoader(Protocol):
    def load(self, reference: str) -> Plugin: ...


class SubprocessChannel:
    """JSON request/response plugin running as a child process.

    Each call writes ``{"action": ..., "config": ...}`` to stdin and reads a
    JSON object from stdout.
    """

    def __init__(self, argv: list[str], *, cwd: Path, timeout: float | None) -> None:
        self.argv = argv
        self.cwd = cwd
        self.timeout = timeout

    def call(self, action: str, config: Any = None) -> dict[str, Any]:
        request = json.dumps({"action": action, "config": config})
        _log.debug("plugin_subprocess_call argv=%s action=%s", self.argv, action)
        completed = subprocess.run(
            self.argv,
            input=request,
            capture_output=True,
            text=True,
            cwd=self.cwd,
            timeout=self.timeout,
            check=False,
        )
        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            raise RuntimeError(
                f"plugin process {self.argv[0]} exited {completed.returncode}"
                f"{': ' + stderr if stderr else ''}"
            )
        response = json.loads(completed.stdout or "{}")
        if not isinstance(response, dict):
            raise ValueError(f"plugin process {self.argv[0]} must reply with an object")
        return response

    def transform(self, document: dict[str, Any]) -> Any:
        return self.call("transform", document).get("config")

    def validate(self, document: dict[str, Any]) -> Any:
        return self.call("validate", document).get("diagnostics", [])


class DefaultPluginLoader:
    """Load ``.py`` files, declarative YAML/JSON, modules and subprocesses."""

    def __init__(self, *, project_root: Path, subprocess_timeout: float | None = 60.0) -> None:
        self.project_root = project_root
        self.subprocess_timeout = subprocess_timeout

    def load(self, reference: str) -> Plugin:
        if reference.startswith(COMMAND_PREFIX):
            return self._load_subprocess(reference)
        if reference.endswith(".py"):
            return self._load_file(reference)
        if reference.endswith(_DECLARATIVE_SUFFIXES):
            return self._load_declarative(reference)
        return self._load_module(reference)

    def _path(self, reference: str) -> Path:
        path = Path(reference).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        path = path.resolve()
        if not path.is_file():
            raise PluginLoadFailure(f"plugin file not found: {path}")
        return path

    def _load_file(self, reference: str) -> Plugin:
        path = self._path(reference)
        module_name = f"settingsforge_plugin_{path.stem.replace('-', '_')}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadFailure(f"cannot import plugin file: {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise PluginLoadFailure(f"error importing {path}: {exc}") from exc
        return Plugin.from_object(getattr(module, "PLUGIN", module), reference=reference)

    def _load_declarative(self, reference: str) -> Plugin:
        path = self._path(reference)
        try:
            text = path.read_text(encoding="utf-8")
            raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
            raise PluginLoadFailure(f"cannot read plugin document {path}: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise PluginLoadFailure(f"{path}: plugin document root must be a mapping")
        return Plugin.from_object(raw, reference=reference)

    def _load_module(self, reference: str) -> Plugin:
        module_name, _, attr = reference.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise PluginLoadFailure(f"module not importable: {exc}") from exc
        except Exception as exc:
            raise PluginLoadFailure(
                f"error importing {module_name}: {type(exc).__name__}: {exc}"
            ) from exc
        if attr:
            if not hasattr(module, attr):
                raise PluginLoadFailure(f"module {module_name} has no attribute '{attr}'")
            target = getattr(module, attr)
        else:
            target = getattr(module, "PLUGIN", module)
        return Plugin.from_object(target, reference=reference)

    def _load_subprocess(self, reference: str) -> Plugin:
        try:
            argv = shlex.split(reference[len(COMMAND_PREFIX) :])
        except ValueError as exc:
            raise PluginLoadFailure(f"cannot parse plugin command: {exc}") from exc
        if not argv:
            raise PluginLoadFailure("command plugin reference has no executable")
        channel = SubprocessChannel(
            argv, cwd=self.project_root, timeout=self.subprocess_timeout
        )
        try:
            described = channel.call("describe")
        except (OSError, subprocess.SubprocessError, RuntimeError, ValueError) as exc:
            raise PluginLoadFailure(f"plugin process failed to describe itself: {exc}") from exc
        capabilities = set(described.get("capabilities") or ("transform", "validate"))
        defaults = {
            key: described[key] for key in _DEFAULT_FIELDS if described.get(key) is not None
        }
        return Plugin(
            name=str(described.get("name") or _default_name(reference)),
            reference=reference,
            version=(
                str(described["version"]) if described.get("version") is not None else None
            ),
            transform=channel.transform if "transform" in capabilities else None,
            validate=channel.validate if "validate" in capabilities else None,
            defaults=defaults,
        )


def _resolve_awaitable(value: Any) -> Any:
    if not inspect.isawaitable(value):
        return value

    async def _drive(awaitable: Awaitable[Any]) -> Any:
        return await awaitable

    return asyncio.run(_drive(value))


def _with_plugin_context(exc: CompileError, plugin: Plugin, *, code: str | None = None) -> CompileError:
    diagnostic = exc.diagnostic
    return CompileError(
        Diagnostic(
            code=code or diagnostic.code,
            message=f"plugin {plugin.name}: {diagnostic.message}",
            severity=diagnostic.severity,
            context={**diagnostic.context, "plugin": plugin.name},
            remediation=diagnostic.remediation,
        )
    )


def _transform_error(plugin: Plugin, index: int, message: str) -> CompileError:
    return CompileError(
        Diagnostic.error(
            DiagnosticCode.PLUGIN_TRANSFORM_ERROR,
            f"plugin {plugin.name} transform failed: {message}",
            remediation="fix or remove the plugin from 'plugins'",
            plugin=plugin.name,
            reference=plugin.reference,
            index=index,
        )
    )


def _apply_plugin(
    config: ResolvedConfig,
    plugin: Plugin,
    *,
    index: int,
    refine: Refiner,
    diagnostics: list[Diagnostic],
) -> ResolvedConfig:
    if plugin.defaults:
        try:
            fragment, found = refine(plugin.defaults_document(), plugin.origin)
        except CompileError as exc:
            raise _with_plugin_context(exc, plugin) from exc
        diagnostics.extend(found)
        merge_into(config, fragment)

    if plugin.transform is None:
        return config

    document = copy.deepcopy(config.to_document())
    try:
        result = _resolve_awaitable(plugin.transform(document))
    except Exception as exc:
        raise _transform_error(plugin, index, f"{type(exc).__name__}: {exc}") from exc
    if result is None:
        raise _transform_error(plugin, index, "transform returned nothing")
    if not isinstance(result, Mapping):
        raise _transform_error(
            plugin, index, f"transform returned {type(result).__name__}, expected a mapping"
        )

    try:
        fragment, found = refine(result, plugin.origin)
    except CompileError as exc:
        if exc.diagnostic.code == DiagnosticCode.TYPE_COERCION_ERROR:
            raise _with_plugin_context(exc, plugin) from exc
        raise _with_plugin_context(
            exc, plugin, code=DiagnosticCode.PLUGIN_TRANSFORM_ERROR
        ) from exc
    diagnostics.extend(found)
    if fragment.extends or fragment.plugins:
        _log.warning(
            "plugin_result_ignored_fields plugin=%s extends=%s plugins=%s",
            plugin.name,
            list(fragment.extends),
            list(fragment.plugins),
        )
    return replace_config(config, fragment)


def run_pipeline(
    config: ResolvedConfig,
    references: Iterable[str],
    *,
    loader: PluginLoader,
    refine: Refiner,
    diagnostics: list[Diagnostic],
) -> tuple[ResolvedConfig, list[Plugin]]:
    """Load and apply plugins in declared order.

    A load failure excludes the plugin with a warning; any transform failure
    raises ``CompileError``.
    """
    applied: list[Plugin] = []
    for index, reference in enumerate(references):
        try:
            plugin = loader.load(reference)
        except PluginLoadFailure as exc:
            _log.warning("plugin_load_failed ref=%s error=%s", reference, exc)
            diagnostics.append(
                Diagnostic.warning(
                    DiagnosticCode.PLUGIN_LOAD_ERROR,
                    f"plugin '{reference}' could not be loaded and was skipped: {exc}",
                    remediation="check the plugin path or install the module",
                    reference=reference,
                    index=index,
                )
            )
            continue
        config = _apply_plugin(
            config, plugin, index=index, refine=refine, diagnostics=diagnostics
        )
        applied.append(plugin)
        _log.info(
            "plugin_applied name=%s ref=%s index=%d transform=%s",
            plugin.name,
            reference,
            index,
            plugin.transform is not None,
        )
    return config, applied


def _reported_items(reported: Any) -> list[Any]:
    if reported is None:
        return []
    if isinstance(reported, (str, Mapping, Diagnostic)):
        return [reported]
    return list(reported)


def run_validators(
    config: ResolvedConfig, plugins: Iterable[Plugin]
) -> list[Diagnostic]:
    """Run each plugin's ``validate`` against the final document."""
    out: list[Diagnostic] = []
    document = config.to_document()
    for plugin in plugins:
        if plugin.validate is None:
            continue
        try:
            reported = _reported_items(
                _resolve_awaitable(plugin.validate(copy.deepcopy(document)))
            )
        except Exception as exc:
            _log.warning("plugin_validate_failed plugin=%s error=%s", plugin.name, exc)
            out.append(
                Diagnostic.warning(
                    DiagnosticCode.PLUGIN_VALIDATE_ERROR,
                    f"plugin {plugin.name} validate raised {type(exc).__name__}: {exc}",
                    plugin=plugin.name,
                )
            )
            continue
        for item in reported:
            if isinstance(item, Diagnostic):
                out.append(item)
            elif isinstance(item, Mapping):
                context = item.get("context")
                context = dict(context) if isinstance(context, Mapping) else {}
                context["plugin"] = plugin.name
                out.append(
                    diagnostic_from_mapping(
                        {**item, "context": context},
                        default_code=DiagnosticCode.PLUGIN_DIAGNOSTIC,
                        default_severity=SEVERITY_WARNING,
                    )
                )
            else:
                out.append(
                    Diagnostic.warning(
                        DiagnosticCode.PLUGIN_DIAGNOSTIC,
                        f"{plugin.name}: {item}",
                        plugin=plugin.name,
                    )
                )
    _log.debug("plugin_validation_done diagnostics=%d", len(out))
    return out
