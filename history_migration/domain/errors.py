"""
Error taxonomy for the account history migration.

Configuration problems are fatal at startup; data-shape problems are raised
immediately and never retried. Write failures inside the pipeline propagate
as whatever the table client raised.
"""

from __future__ import annotations

from typing import Any, Dict, List


class MigrationError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(MigrationError):
    """Configuration is missing or could not be fetched."""


class ConfigFormatError(ConfigurationError):
    """A configuration document has a shape we refuse to load."""


class UnsupportedEntityVersionError(MigrationError, ValueError):
    """A stored entity carries a schema version this tool does not understand."""

    def __init__(self, version: object) -> None:
        self.version = version
        super().__init__(
            f"Entity version {version} is not supported. Only versions 1 & 2 are supported."
        )


class PhaseFailedError(MigrationError):
    """A phase failed in at least one environment; `results` covers every environment."""

    def __init__(self, phase: str, results: List[Dict[str, Any]]) -> None:
        self.phase = phase
        self.results = results
        failed = {r["env"]: r["error"] for r in results if r.get("error")}
        super().__init__(f"Phase {phase} failed for {', '.join(failed)}: {failed}")


__all__ = [
    "MigrationError",
    "PhaseFailedError",
    "ConfigurationError",
    "ConfigFormatError",
    "UnsupportedEntityVersionError",
]
