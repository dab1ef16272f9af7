# -*- coding: utf-8 -*-
"""
Error taxonomy for the MCMCP engine.

Only a subset ever reaches a participant:
  - PersistenceError      -> retryable failure of the current get/register step
  - TurnViolationError    -> a consensus teammate acted out of turn
Rendering failures are absorbed by the stimulus client and never escape it.
"""

from __future__ import annotations


class MCMCPError(Exception):
    """Base class for every error raised by this package."""


class GatekeeperLoadError(MCMCPError):
    """A per-category gatekeeper model file is missing or malformed."""


class RenderingServiceError(MCMCPError):
    """The stimulus renderer was unreachable or returned a malformed payload."""


class PersistenceError(MCMCPError):
    """A chain-log read or write failed; nothing from the step was committed."""


class DimensionMismatchError(MCMCPError, ValueError):
    """Two vectors (or a vector and a model) disagree on dimensionality."""

    def __init__(self, got: int, expected: int, what: str = "vector"):
        super().__init__(f"{what} dimensionality ({got}) does not match expected dimensionality ({expected})")
        self.got = got
        self.expected = expected


class GatekeeperRejectionLoop(MCMCPError):
    """Automatic gatekeeper decisions kept consuming the trial past the retry cap."""


class TurnViolationError(MCMCPError):
    """A consensus participant registered a choice without holding the turn."""
