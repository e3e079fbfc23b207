"""Typed failures raised by the provisioning pipeline.

Every error carries an optional remediation: the next concrete action
(usually a command) the operator should take. The CLI prints both.
"""

from typing import Optional, Sequence


class ProvisioningError(Exception):
    """Base class for all expected, user-facing failures."""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation


class ValidationError(ProvisioningError):
    """Operator input is malformed or inconsistent."""


class ConflictError(ProvisioningError):
    """A resource the run would create already exists."""


class NotFoundError(ProvisioningError):
    """A required platform resource could not be found."""


class AmbiguousError(ProvisioningError):
    """Several candidates match and the operator must choose one."""

    def __init__(self, message: str, candidates: Sequence[str], remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.candidates = list(candidates)


class ExternalCommandFailure(ProvisioningError):
    """A platform API call or host/workload command failed."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        remediation: Optional[str] = None,
    ):
        super().__init__(message, remediation)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}: {self.stderr.strip()}"
        return self.message


class WorkloadTimeoutError(ProvisioningError, TimeoutError):
    """A bounded polling loop ran out of attempts."""
