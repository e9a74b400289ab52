from __future__ import annotations

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from settingsforge.emit import build_document
from settingsforge.merge import merge_fragments
from settingsforge.models import (
    DEFAULT_SCHEMA_URL,
    AgentSpec,
    ArtifactSources,
    CommandSpec,
    CompileError,
    CompileResult,
    ConfigError,
    ConfigFragment,
    Diagnostic,
)
from settingsforge.normalize import (
    agent_spec_from_source,
    build_field_aliases,
    command_spec_from_source,
    normalize_fragment,
)
from settingsforge.plugins import (
    DefaultPluginLoader,
    PluginLoader,
    run_pipeline,
    run_validators,
)
from settingsforge.presets import (
    DefaultFragmentLoader,
    FragmentLoader,
    PresetResolver,
    load_reference,
)
from settingsforge.sources import MarkdownReader, read_markdown_sources
from settingsforge.validate import validate_config

_log = logging.getLogger("settingsforge.compiler")

CONFIG_FILENAMES = (
    ".settingsforge.yaml",
    ".settingsforge.yml",
    ".settingsforge.json",
    "settingsforge.yaml",
)
ROOT_ORIGIN = "<root>"


@dataclass(frozen=True)
class CompilerOptions:
    project_root: Path = field(default_factory=Path.cwd)
    builtin_presets: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    field_aliases: Mapping[str, str] = field(default_factory=dict)
    schema_url: str = DEFAULT_SCHEMA_URL
    resolve_permission_conflicts: bool = True
    fragment_loader: FragmentLoader | None = None
    plugin_loader: PluginLoader | None = None
    markdown_reader: MarkdownReader | None = None


def find_config_file(project_root: Path) -> Path:
    for name in CONFIG_FILENAMES:
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    raise ConfigError(
        f"No config file found in {project_root} (looked for {', '.join(CONFIG_FILENAMES)})"
    )


def load_config_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed parsing config '{path}': {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path}: config root must be a mapping")
    return dict(raw)


class _CompileRun:
    """State for one compile call: loaders, caches and the project root."""

    def __init__(self, options: CompilerOptions, aliases: Mapping[str, str]) -> None:
        self.options = options
        self.aliases = aliases
        self.project_root = options.project_root.resolve()
        self.fragment_loader: FragmentLoader = options.fragment_loader or DefaultFragmentLoader(
            project_root=self.project_root,
            builtin_presets=options.builtin_presets,
        )
        self.plugin_loader: PluginLoader = options.plugin_loader or DefaultPluginLoader(
            project_root=self.project_root
        )
        self.read_markdown: MarkdownReader = options.markdown_reader or read_markdown_sources

    def _load_preset_fragment(
        self, reference: str, *, relative_to: Path, field_name: str
    ) -> tuple[ConfigFragment, list[Diagnostic]]:
        location, raw = load_reference(
            self.fragment_loader, reference, relative_to=relative_to, field=field_name
        )
        return normalize_fragment(
            raw, origin=reference, aliases=self.aliases, base_dir=location.base_dir
        )

    def expand_sources(
        self, fragment: ConfigFragment, diagnostics: list[Diagnostic]
    ) -> ConfigFragment:
        """Fold command and agent presets and files into the fragment.

        Precedence, lowest first: presets, files, direct definitions.
        """
        if fragment.command_sources.is_empty() and fragment.agent_sources.is_empty():
            return fragment
        relative_to = fragment.base_dir or self.project_root

        commands: dict[str, CommandSpec] = {}
        for reference in fragment.command_sources.presets:
            loaded, found = self._load_preset_fragment(
                reference, relative_to=relative_to, field_name="commands.presets"
            )
            diagnostics.extend(found)
            commands.update(loaded.commands)
        for source in self.read_markdown(
            fragment.command_sources.files, root=self.project_root
        ):
            commands[source.name] = command_spec_from_source(
                source.name,
                source.content,
                source.metadata,
                origin=str(source.path or source.name),
            )
        commands.update(fragment.commands)

        agents: dict[str, AgentSpec] = {}
        for reference in fragment.agent_sources.presets:
            loaded, found = self._load_preset_fragment(
                reference, relative_to=relative_to, field_name="subagents.presets"
            )
            diagnostics.extend(found)
            agents.update(loaded.agents)
        for source in self.read_markdown(
            fragment.agent_sources.files, root=self.project_root
        ):
            agents[source.name] = agent_spec_from_source(
                source.name,
                source.content,
                source.metadata,
                origin=str(source.path or source.name),
            )
        agents.update(fragment.agents)

        _log.debug(
            "artifact_sources_expanded origin=%s commands=%d agents=%d",
            fragment.origin,
            len(commands),
            len(agents),
        )
        return dataclasses.replace(
            fragment,
            commands=commands,
            agents=agents,
            command_sources=ArtifactSources(),
            agent_sources=ArtifactSources(),
        )


class Compiler:
    """Compile a root config document into a settings document plus artifacts.

    The compiler only holds immutable options; loaders and caches are built
    fresh for every call.
    """

    def __init__(self, options: CompilerOptions | None = None) -> None:
        self.options = options or CompilerOptions()
        self.aliases = build_field_aliases(self.options.field_aliases)

    def compile_file(self, path: Path | None = None) -> CompileResult:
        config_path = path or find_config_file(self.options.project_root)
        return self.compile(load_config_document(config_path), source_path=config_path)

    def compile(
        self, document: Mapping[str, Any], *, source_path: Path | None = None
    ) -> CompileResult:
        run = _CompileRun(self.options, self.aliases)
        origin = source_path.name if source_path is not None else ROOT_ORIGIN
        base_dir = source_path.resolve().parent if source_path is not None else run.project_root
        diagnostics: list[Diagnostic] = []
        presets: list[str] = []
        applied: list[str] = []
        started = time.perf_counter()
        _log.info("compile_start origin=%s project_root=%s", origin, run.project_root)

        def refine(raw: Mapping[str, Any], fragment_origin: str):
            fragment, found = normalize_fragment(
                raw, origin=fragment_origin, aliases=self.aliases, base_dir=run.project_root
            )
            return run.expand_sources(fragment, found), found

        try:
            root, found = normalize_fragment(
                document, origin=origin, aliases=self.aliases, base_dir=base_dir
            )
            diagnostics.extend(found)
            resolver = PresetResolver(run.fragment_loader, aliases=self.aliases)
            fragments, found = resolver.resolve(
                root,
                root_key=str(source_path.resolve()) if source_path is not None else None,
            )
            diagnostics.extend(found)
            presets = [fragment.origin for fragment in fragments[:-1]]
            for fragment in fragments[:-1]:
                if fragment.plugins:
                    _log.warning(
                        "preset_plugins_ignored preset=%s plugins=%s",
                        fragment.origin,
                        list(fragment.plugins),
                    )
            fragments = [run.expand_sources(item, diagnostics) for item in fragments]
            config = merge_fragments(fragments)

            config, plugins = run_pipeline(
                config,
                root.plugins,
                loader=run.plugin_loader,
                refine=refine,
                diagnostics=diagnostics,
            )
            applied = [plugin.name for plugin in plugins]
            diagnostics.extend(run_validators(config, plugins))
            diagnostics.extend(
                validate_config(config, schema_url=self.options.schema_url)
            )
            if any(item.is_error for item in diagnostics):
                _log.error(
                    "compile_blocked origin=%s errors=%s",
                    origin,
                    [item.code for item in diagnostics if item.is_error],
                )
                return CompileResult(
                    None, diagnostics=diagnostics, presets=presets, plugins=applied
                )
            output, found = build_document(
                config, resolve_conflicts=self.options.resolve_permission_conflicts
            )
            diagnostics.extend(found)
        except CompileError as exc:
            _log.error(
                "compile_failed origin=%s code=%s error=%s",
                origin,
                exc.diagnostic.code,
                exc.diagnostic.message,
            )
            return CompileResult(
                None,
                diagnostics=[*diagnostics, exc.diagnostic],
                presets=presets,
                plugins=applied,
            )

        _log.info(
            "compile_done origin=%s presets=%d plugins=%d warnings=%d duration_sec=%.3f",
            origin,
            len(presets),
            len(applied),
            len(diagnostics),
            time.perf_counter() - started,
        )
        return CompileResult(
            output,
            commands=dict(config.commands),
            agents=dict(config.agents),
            diagnostics=diagnostics,
            presets=presets,
            plugins=applied,
            sources=dict(config.sources),
        )


def compile_config(
    document: Mapping[str, Any] | Path, options: CompilerOptions | None = None
) -> CompileResult:
    compiler = Compiler(options)
    if isinstance(document, Path):
        return compiler.compile_file(document)
    return compiler.compile(document)
