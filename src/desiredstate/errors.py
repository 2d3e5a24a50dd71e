"""Error taxonomy for the reconciliation agent.

Registry and parse errors are transient from the agent's point of view:
the next tick simply tries again. Verification errors mean the package
must never be activated. Everything here is caught at the component
boundary by the reconciler or per pass by the control loop, so none of it
ever stops the agent.
"""

from __future__ import annotations


class DesiredStateError(Exception):
    """Base class for every error raised by the agent."""


class RegistryError(DesiredStateError):
    """Transport, authentication, or lookup failure against the registry."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(DesiredStateError):
    """The artifact exists but carries no desired-state layer."""


class ParseError(DesiredStateError):
    """Malformed desired-state document or component entry."""


class VerificationError(DesiredStateError):
    """A package could not be proven authentic."""


class KeyParseError(VerificationError):
    """The public key ring could not be parsed."""


class SignatureInvalidError(VerificationError):
    """The detached signature does not verify against the key ring."""


class OrchestratorError(DesiredStateError):
    """The external orchestration tool exited non-zero or could not run."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ImageLoadError(DesiredStateError):
    """The container runtime rejected an image archive."""


class ArchiveError(DesiredStateError, OSError):
    """A compressed tar stream is corrupt or unreadable."""


class PackageLayoutError(DesiredStateError):
    """A downloaded package does not contain an application file."""


class ReconcileCancelled(DesiredStateError):
    """Shutdown was requested while a pass was in flight."""
