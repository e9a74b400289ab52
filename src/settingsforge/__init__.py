"""Layered agent-settings compiler."""

from settingsforge.compiler import Compiler, CompilerOptions, compile_config
from settingsforge.models import (
    CompileError,
    CompileResult,
    ConfigError,
    Diagnostic,
    DiagnosticCode,
)
from settingsforge.plugins import Plugin

__all__ = [
    "CompileError",
    "CompileResult",
    "Compiler",
    "CompilerOptions",
    "ConfigError",
    "Diagnostic",
    "DiagnosticCode",
    "Plugin",
    "compile_config",
]
