from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from settingsforge._logging import setup_logging
from settingsforge.compiler import (
    Compiler,
    CompilerOptions,
    find_config_file,
    load_config_document,
)
from settingsforge.emit import render_artifacts, write_artifacts
from settingsforge.models import CompileResult, ConfigError, Diagnostic
from settingsforge.utils import atomic_write_text, dump_json, dump_yaml

_cli_log = logging.getLogger("settingsforge.cli")


def _console() -> Console:
    return Console(highlight=False)


def _err_console() -> Console:
    return Console(highlight=False, stderr=True)


def _compile_from_args(args: argparse.Namespace) -> tuple[CompileResult, Path]:
    project_root = Path(args.project_root).expanduser().resolve()
    config_path = (
        Path(args.config).expanduser().resolve()
        if args.config
        else find_config_file(project_root)
    )
    compiler = Compiler(
        CompilerOptions(
            project_root=project_root,
            resolve_permission_conflicts=not args.keep_conflicts,
        )
    )
    document = load_config_document(config_path)
    _cli_log.info("cli_compile config=%s project_root=%s", config_path, project_root)
    return compiler.compile(document, source_path=config_path), config_path


def _diagnostics_table(diagnostics: Sequence[Diagnostic]) -> Table:
    table = Table(title="Diagnostics", box=box.SIMPLE)
    table.add_column("Severity")
    table.add_column("Code", style="bold")
    table.add_column("Message")
    for item in diagnostics:
        style = "red" if item.is_error else "yellow"
        table.add_row(f"[{style}]{item.severity}[/{style}]", item.code, item.message)
    return table


def _print_diagnostics(
    diagnostics: Sequence[Diagnostic], *, include_warnings: bool
) -> None:
    shown = [item for item in diagnostics if include_warnings or item.is_error]
    if not shown:
        return
    _err_console().print(_diagnostics_table(shown))


def _summary_table(result: CompileResult, config_path: Path) -> Table:
    table = Table(title="Compiled Settings", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value", style="white")
    table.add_row("Config", str(config_path))
    table.add_row("Status", "ok" if result.ok else "failed")
    table.add_row("Presets", ", ".join(result.presets) or "-")
    table.add_row("Plugins", ", ".join(result.plugins) or "-")
    document = result.document or {}
    permissions = document.get("permissions", {})
    for category in ("allow", "ask", "deny"):
        table.add_row(
            f"Permissions ({category})", str(len(permissions.get(category, [])))
        )
    table.add_row("Hook events", ", ".join(document.get("hooks", {})) or "-")
    table.add_row("Env keys", ", ".join(document.get("env", {})) or "-")
    table.add_row("Commands", ", ".join(result.commands) or "-")
    table.add_row("Agents", ", ".join(result.agents) or "-")
    table.add_row("Errors", str(len(result.errors)))
    table.add_row("Warnings", str(len(result.warnings)))
    return table


def _cmd_compile(args: argparse.Namespace) -> int:
    result, config_path = _compile_from_args(args)
    _print_diagnostics(result.diagnostics, include_warnings=args.show_diagnostics)
    if not result.ok:
        print(
            f"[compile failed] {len(result.errors)} error(s) in {config_path}",
            file=sys.stderr,
        )
        return 1
    assert result.document is not None

    if args.out:
        out_path = Path(args.out).expanduser()
        atomic_write_text(out_path, dump_json(result.document))
        print(f"Wrote settings to {out_path}", file=sys.stderr)
    if args.artifacts_dir:
        written = write_artifacts(
            render_artifacts(result.commands, result.agents),
            Path(args.artifacts_dir).expanduser(),
        )
        print(f"Wrote {len(written)} artifact file(s)", file=sys.stderr)

    if args.format == "table":
        _console().print(_summary_table(result, config_path))
    elif args.format == "yaml":
        sys.stdout.write(dump_yaml(result.to_json()))
    elif not args.out:
        sys.stdout.write(dump_json(result.document))
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    result, config_path = _compile_from_args(args)
    if args.format == "json":
        print(
            json.dumps(
                {
                    "config": str(config_path),
                    "ok": result.ok,
                    "diagnostics": [item.to_json() for item in result.diagnostics],
                },
                indent=2,
            )
        )
    else:
        console = _console()
        if result.diagnostics:
            console.print(_diagnostics_table(result.diagnostics))
        status = "[green]valid[/green]" if result.ok else "[red]invalid[/red]"
        console.print(f"{config_path}: {status}")
    return 0 if result.ok else 1


def _inspect_payload(result: CompileResult, config_path: Path) -> dict[str, Any]:
    return {
        "config": str(config_path),
        "ok": result.ok,
        "presets": list(result.presets),
        "plugins": list(result.plugins),
        "sources": dict(result.sources),
        "commands": sorted(result.commands),
        "agents": sorted(result.agents),
    }


def _cmd_inspect(args: argparse.Namespace) -> int:
    result, config_path = _compile_from_args(args)
    payload = _inspect_payload(result, config_path)
    if args.format == "json":
        print(json.dumps(payload, indent=2))
    elif args.format == "yaml":
        sys.stdout.write(dump_yaml(payload))
    else:
        console = _console()
        overview = Table(title="Resolution", show_header=False)
        overview.add_column("Field", style="bold cyan")
        overview.add_column("Value", style="white")
        overview.add_row("Config", payload["config"])
        for index, name in enumerate(payload["presets"], 1):
            overview.add_row(f"Preset {index}", name)
        for index, name in enumerate(payload["plugins"], 1):
            overview.add_row(f"Plugin {index}", name)
        console.print(overview)

        sources = Table(title="Value Origins", box=box.SIMPLE)
        sources.add_column("Field", style="bold cyan")
        sources.add_column("Defined By")
        for key in sorted(payload["sources"]):
            sources.add_row(key, payload["sources"][key])
        console.print(sources)
    _print_diagnostics(result.diagnostics, include_warnings=args.show_diagnostics)
    return 0 if result.ok else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="settingsforge", description="Layered agent settings compiler"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "--config",
            default=None,
            help="Root config path (default: discovered in the project root)",
        )
        target.add_argument(
            "--project-root",
            default=".",
            help="Directory used for relative presets, plugins and globs",
        )
        target.add_argument(
            "--keep-conflicts",
            action="store_true",
            help="Do not drop permissions shadowed by deny/ask entries",
        )
        target.add_argument(
            "--show-diagnostics",
            action="store_true",
            help="Print warnings as well as errors",
        )

    compile_cmd = sub.add_parser("compile", help="Compile settings and artifacts")
    _add_common(compile_cmd)
    compile_cmd.add_argument(
        "--format", choices=["json", "yaml", "table"], default="json"
    )
    compile_cmd.add_argument("--out", default=None, help="Write settings JSON here")
    compile_cmd.add_argument(
        "--artifacts-dir",
        default=None,
        help="Write commands/ and agents/ markdown files under this directory",
    )
    compile_cmd.set_defaults(handler=_cmd_compile)

    validate_cmd = sub.add_parser("validate", help="Compile and report diagnostics")
    _add_common(validate_cmd)
    validate_cmd.add_argument("--format", choices=["json", "table"], default="table")
    validate_cmd.set_defaults(handler=_cmd_validate)

    inspect_cmd = sub.add_parser(
        "inspect", help="Show preset order, plugins and value origins"
    )
    _add_common(inspect_cmd)
    inspect_cmd.add_argument(
        "--format", choices=["json", "yaml", "table"], default="table"
    )
    inspect_cmd.set_defaults(handler=_cmd_inspect)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    setup_logging(verbosity=args.verbose)
    command = str(getattr(args, "command", "unknown"))
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        exit_code = int(args.handler(args))
    except ConfigError as exc:
        _cli_log.error("cli_command_error command=%s kind=config error=%s", command, exc)
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except RuntimeError as exc:
        _cli_log.error("cli_command_error command=%s kind=runtime error=%s", command, exc)
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            time.perf_counter() - started,
        )
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
