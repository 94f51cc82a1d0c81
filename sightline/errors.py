"""Exception types raised inside sightline collaborators.

These never cross the public surface of the cache, integrator, optimizer,
tracker or applier; each of those catches them and reports the failure in
a typed result field instead.
"""

from __future__ import annotations


class SightlineError(Exception):
    """Base class for all sightline errors."""


class OracleError(SightlineError):
    """A visibility or cover oracle failed to answer."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(message)
        self.source = source


class OracleUnavailableError(OracleError):
    """The oracle for a source is disabled or was never configured."""


class InvalidEntityError(SightlineError):
    """An entity reference is missing, unresolvable or has no position."""


class BatchTimeoutError(SightlineError):
    """A compute batch exceeded its deadline."""

    def __init__(self, batch_size: int, timeout_ms: float) -> None:
        super().__init__(
            f"batch of {batch_size} timed out after {timeout_ms:.0f} ms"
        )
        self.batch_size = batch_size
        self.timeout_ms = timeout_ms


class StoreError(SightlineError):
    """The persistent store rejected a read or write."""


class InvalidOutcomeError(SightlineError):
    """An outcome names an unknown state or an unresolvable entity."""
