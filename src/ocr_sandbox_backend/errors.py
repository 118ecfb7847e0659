"""
Exception hierarchy for the snapshot tree and job scheduling subsystem.

Every failure the subsystem reports to its callers is one of these types.
The service boundary (see service.py) lets them through unchanged and turns
anything else into ServiceUnavailable, so no other exception type reaches the
HTTP layer.
"""

from __future__ import annotations


class SandboxBackendError(Exception):
    """Base class for all subsystem errors."""


class TrackNotFound(SandboxBackendError):
    """The track does not resolve in the sandbox (invalid or stale)."""


class Conflict(SandboxBackendError):
    """The snapshot lock state does not allow the requested operation."""


class NotAvailable(SandboxBackendError):
    """The project or sandbox is not in a state that allows the request."""


class PreconditionFailed(SandboxBackendError):
    """The METS document has no file group for the requested snapshot."""


class MalformedDocument(SandboxBackendError):
    """The METS document cannot be parsed."""


class BadRequest(SandboxBackendError):
    """The request is well-formed but not applicable to the target."""


class NotFound(SandboxBackendError):
    """An unknown project, sandbox, collection or job was requested."""


class ConfigurationError(SandboxBackendError):
    """The runtime configuration is invalid."""


class ServiceUnavailable(SandboxBackendError):
    """An unexpected internal failure, already logged."""
