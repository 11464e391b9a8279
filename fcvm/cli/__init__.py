"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import FCVMModalCLI, main

__all__ = ['FCVMModalCLI', 'main']
