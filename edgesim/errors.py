"""Error taxonomy shared by the cluster core, storage and API layers."""

from __future__ import annotations


class EdgeSimError(Exception):
    """Base class for all errors raised by the simulator core."""


class NotFound(EdgeSimError, LookupError):
    """Unknown node, simulation, dataset or session."""


class AlreadyExists(EdgeSimError, ValueError):
    """A node or simulation with the same name is already registered."""


class AlreadyRunning(EdgeSimError, RuntimeError):
    """A sensor generation session is already active."""


class InvalidRange(EdgeSimError, ValueError):
    """Start of a time window lies after its end."""


class PersistenceFailure(EdgeSimError, RuntimeError):
    """Underlying storage read or write failed."""


class NotConfigured(EdgeSimError, RuntimeError):
    """A required address or endpoint is missing for the requested action."""


class PublishFailure(EdgeSimError, RuntimeError):
    """The publish channel rejected or failed to deliver a message."""
