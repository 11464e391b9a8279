"""Project-specific exception types."""

from __future__ import annotations


class FCVMError(RuntimeError):
    """Base error for domain-level fcvm failures."""


class PrerequisiteError(FCVMError):
    """Raised when a pre-flight check fails before any resource is provisioned."""
