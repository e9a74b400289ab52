from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

from settingsforge.models import (
    CompileError,
    ConfigFragment,
    Diagnostic,
    DiagnosticCode,
    PresetLookupError,
)
from settingsforge.normalize import DEFAULT_FIELD_ALIASES, normalize_fragment

_log = logging.getLogger("settingsforge.presets")

KIND_BUILTIN = "builtin"
KIND_LOCAL = "local"
KIND_EXTERNAL = "external"

BUILTIN_PREFIX = "builtin:"
_LOCAL_PREFIXES = ("./", "../", "/", "~")
_LOCAL_SUFFIXES = (".yaml", ".yml", ".json")
_PACKAGE_RESOURCE_NAMES = ("preset.yaml", "preset.yml", "preset.json")


@dataclass(frozen=True)
class PresetLocation:
    reference: str
    kind: str
    key: str
    path: Path | None = None
    base_dir: Path | None = None


class FragmentLoader(Protocol):
    def locate(self, reference: str, *, relative_to: Path) -> PresetLocation: ...

    def load(self, location: PresetLocation) -> Mapping[str, Any]: ...


def is_local_reference(reference: str) -> bool:
    return reference.startswith(_LOCAL_PREFIXES) or reference.endswith(
        _LOCAL_SUFFIXES
    )


def classify_reference(reference: str, builtin_names: Any = ()) -> str:
    if reference.startswith(BUILTIN_PREFIX):
        return KIND_BUILTIN
    if is_local_reference(reference):
        return KIND_LOCAL
    if reference in builtin_names:
        return KIND_BUILTIN
    return KIND_EXTERNAL


def _parse_document(text: str, *, suffix: str) -> Any:
    if suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def packaged_presets() -> dict[str, str]:
    """Return ``{name: yaml text}`` for the presets shipped with the package."""
    out: dict[str, str] = {}
    root = resources.files("settingsforge").joinpath("builtin")
    for entry in sorted(root.iterdir(), key=lambda item: item.name):
        if entry.name.endswith((".yaml", ".yml")):
            out[entry.name.rsplit(".", 1)[0]] = entry.read_text(encoding="utf-8")
    return out


class DefaultFragmentLoader:
    """Resolve builtin names, filesystem paths and importable modules."""

    def __init__(
        self,
        *,
        project_root: Path,
        builtin_presets: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.project_root = project_root
        self._overrides = dict(builtin_presets or {})
        self._packaged: dict[str, str] | None = None
        self._cache: dict[str, Mapping[str, Any]] = {}

    @property
    def builtin_names(self) -> set[str]:
        return set(self._packaged_presets()) | set(self._overrides)

    def _packaged_presets(self) -> dict[str, str]:
        if self._packaged is None:
            self._packaged = packaged_presets()
        return self._packaged

    def locate(self, reference: str, *, relative_to: Path) -> PresetLocation:
        kind = classify_reference(reference, self.builtin_names)
        if kind == KIND_BUILTIN:
            name = reference.removeprefix(BUILTIN_PREFIX)
            if name not in self.builtin_names:
                raise PresetLookupError(
                    reference,
                    kind,
                    f"unknown builtin preset; available: {sorted(self.builtin_names)}",
                )
            return PresetLocation(
                reference, kind, f"builtin:{name}", base_dir=self.project_root
            )
        if kind == KIND_LOCAL:
            candidate = Path(reference).expanduser()
            if not candidate.is_absolute():
                candidate = relative_to / candidate
            path = candidate.resolve()
            if not path.is_file():
                raise PresetLookupError(reference, kind, f"file not found: {path}")
            return PresetLocation(
                reference, kind, str(path), path=path, base_dir=path.parent
            )
        if not reference.partition(":")[0]:
            raise PresetLookupError(reference, kind, "empty module name")
        return PresetLocation(
            reference, kind, f"module:{reference}", base_dir=self.project_root
        )

    def load(self, location: PresetLocation) -> Mapping[str, Any]:
        cached = self._cache.get(location.key)
        if cached is not None:
            return cached
        if location.kind == KIND_BUILTIN:
            document = self._load_builtin(location)
        elif location.kind == KIND_LOCAL:
            document = self._load_file(location)
        else:
            document = self._load_module(location)
        if not isinstance(document, Mapping):
            raise PresetLookupError(
                location.reference, location.kind, "document root must be a mapping"
            )
        self._cache[location.key] = document
        _log.info(
            "preset_loaded ref=%s kind=%s key=%s",
            location.reference,
            location.kind,
            location.key,
        )
        return document

    def _load_builtin(self, location: PresetLocation) -> Any:
        name = location.key.removeprefix(BUILTIN_PREFIX)
        if name in self._overrides:
            return self._overrides[name]
        packaged = self._packaged_presets()
        if name not in packaged:
            raise PresetLookupError(
                location.reference, location.kind, "unknown builtin preset"
            )
        try:
            return yaml.safe_load(packaged[name])
        except yaml.YAMLError as exc:
            raise PresetLookupError(
                location.reference, location.kind, f"invalid YAML: {exc}"
            ) from exc

    def _load_file(self, location: PresetLocation) -> Any:
        path = location.path or Path(location.key)
        try:
            text = path.read_text(encoding="utf-8")
            return _parse_document(text, suffix=path.suffix)
        except (OSError, UnicodeDecodeError) as exc:
            raise PresetLookupError(
                location.reference, location.kind, f"cannot read file: {exc}"
            ) from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise PresetLookupError(
                location.reference, location.kind, f"cannot parse file: {exc}"
            ) from exc

    def _load_module(self, location: PresetLocation) -> Any:
        module_name, _, attr = location.reference.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise PresetLookupError(
                location.reference, location.kind, f"module not importable: {exc}"
            ) from exc
        except Exception as exc:
            raise PresetLookupError(
                location.reference,
                location.kind,
                f"error importing module: {type(exc).__name__}: {exc}",
            ) from exc
        value = getattr(module, attr or "PRESET", None)
        if callable(value):
            try:
                return value()
            except Exception as exc:
                raise PresetLookupError(
                    location.reference,
                    location.kind,
                    f"preset factory failed: {type(exc).__name__}: {exc}",
                ) from exc
        if value is not None:
            return value
        if attr:
            raise PresetLookupError(
                location.reference, location.kind, f"module has no attribute '{attr}'"
            )
        spec = module.__spec__
        if spec is not None and spec.submodule_search_locations:
            package_files = resources.files(module_name)
            for name in _PACKAGE_RESOURCE_NAMES:
                resource = package_files.joinpath(name)
                if resource.is_file():
                    return _parse_document(
                        resource.read_text(encoding="utf-8"),
                        suffix=Path(name).suffix,
                    )
        raise PresetLookupError(
            location.reference,
            location.kind,
            "module defines no PRESET and ships no preset.yaml or preset.json",
        )


class MappingFragmentLoader:
    """In-memory loader keyed by reference string."""

    def __init__(self, documents: Mapping[str, Mapping[str, Any]]) -> None:
        self.documents = dict(documents)

    def locate(self, reference: str, *, relative_to: Path) -> PresetLocation:
        if reference not in self.documents:
            raise PresetLookupError(
                reference,
                classify_reference(reference, self.documents),
                "reference is not registered",
            )
        return PresetLocation(reference, KIND_BUILTIN, reference, base_dir=relative_to)

    def load(self, location: PresetLocation) -> Mapping[str, Any]:
        return self.documents[location.reference]


def _render_cycle_chain(chain: list[str]) -> str:
    lines = ["  cycle chain:"]
    for index in range(len(chain) - 1):
        lines.append(f"    {index + 1}. {chain[index]} -> {chain[index + 1]}")
    return "\n".join(lines)


def preset_not_found(exc: PresetLookupError, **context: Any) -> CompileError:
    return CompileError(
        Diagnostic.error(
            DiagnosticCode.PRESET_NOT_FOUND,
            f"preset '{exc.reference}' ({exc.kind}) could not be loaded: {exc.reason}",
            remediation="check the reference spelling or install the preset",
            reference=exc.reference,
            kind=exc.kind,
            **context,
        )
    )


def load_reference(
    loader: FragmentLoader, reference: str, *, relative_to: Path, **context: Any
) -> tuple[PresetLocation, Mapping[str, Any]]:
    """Locate and load one reference, mapping loader failures to PresetNotFound."""
    try:
        location = loader.locate(reference, relative_to=relative_to)
        return location, loader.load(location)
    except PresetLookupError as exc:
        raise preset_not_found(exc, **context) from exc


class PresetResolver:
    """Depth-first walk of the ``extends`` graph.

    Returns fragments base-most first with the root last. A diamond ancestor
    appears once, at its first completed visit.
    """

    def __init__(
        self,
        loader: FragmentLoader,
        *,
        aliases: Mapping[str, str] = DEFAULT_FIELD_ALIASES,
    ) -> None:
        self.loader = loader
        self.aliases = aliases

    def resolve(
        self, root: ConfigFragment, *, root_key: str | None = None
    ) -> tuple[list[ConfigFragment], list[Diagnostic]]:
        ordered: list[ConfigFragment] = []
        diagnostics: list[Diagnostic] = []
        done: set[str] = set()
        stack: list[tuple[str, str]] = []
        if root_key is not None:
            stack.append((root_key, root.origin))
        relative_to = root.base_dir or Path.cwd()
        for reference in root.extends:
            self._visit(
                reference,
                relative_to=relative_to,
                requested_from=root.origin,
                ordered=ordered,
                diagnostics=diagnostics,
                done=done,
                stack=stack,
            )
        ordered.append(root)
        _log.info(
            "presets_resolved root=%s order=%s",
            root.origin,
            [fragment.origin for fragment in ordered],
        )
        return ordered, diagnostics

    def _visit(
        self,
        reference: str,
        *,
        relative_to: Path,
        requested_from: str,
        ordered: list[ConfigFragment],
        diagnostics: list[Diagnostic],
        done: set[str],
        stack: list[tuple[str, str]],
    ) -> None:
        try:
            location = self.loader.locate(reference, relative_to=relative_to)
        except PresetLookupError as exc:
            raise preset_not_found(exc, requested_from=requested_from) from exc

        if any(key == location.key for key, _ in stack):
            chain = [ref for _, ref in stack] + [reference]
            raise CompileError(
                Diagnostic.error(
                    DiagnosticCode.CIRCULAR_DEPENDENCY,
                    "extends cycle detected.\n" + _render_cycle_chain(chain),
                    remediation="remove one extends edge from the cycle",
                    cycle=chain,
                )
            )
        if location.key in done:
            _log.debug("preset_skip_visited ref=%s key=%s", reference, location.key)
            return

        try:
            raw = self.loader.load(location)
        except PresetLookupError as exc:
            raise preset_not_found(exc, requested_from=requested_from) from exc
        fragment, found = normalize_fragment(
            raw,
            origin=reference,
            aliases=self.aliases,
            base_dir=location.base_dir,
        )
        diagnostics.extend(found)

        stack.append((location.key, reference))
        for parent in fragment.extends:
            self._visit(
                parent,
                relative_to=location.base_dir or relative_to,
                requested_from=reference,
                ordered=ordered,
                diagnostics=diagnostics,
                done=done,
                stack=stack,
            )
        stack.pop()

        done.add(location.key)
        ordered.append(fragment)
        _log.debug("preset_resolved ref=%s kind=%s", reference, location.kind)
