"""Exception types raised inside the orchestrator.

None of these escape ``OrchestratorController``; they mark failures that a
caller one layer up converts into a fallback.
"""
from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


class ServiceStartError(OrchestratorError):
    """A local service process could not be spawned."""


class InvalidTransition(OrchestratorError):
    """A tunnel session was asked to move to a state it cannot reach."""
