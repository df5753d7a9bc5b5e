"""Custom exceptions for the release orchestrator."""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all orchestration errors."""

    pass


class InvalidVersionFormat(PipelineError):
    """Raised when a version string does not match the version grammar."""

    def __init__(self, version: str) -> None:
        self.version = version
        super().__init__(
            f"Invalid version format '{version}': expected vX.Y.Z or "
            "vX.Y.Z-(rc|pre|alpha|beta|hotfix).N"
        )


class InvalidRequestError(PipelineError):
    """Raised when a deployment request is inconsistent."""

    pass


class ConfigurationError(PipelineError):
    """Raised for configuration issues (bad thresholds, unreadable files, etc.)."""

    pass


class BuildFailed(PipelineError):
    """Raised when the build collaborator reports failure."""

    pass


class ScanUnavailable(PipelineError):
    """Raised when a scanner cannot produce results."""

    def __init__(self, tool: str = "", message: str = "") -> None:
        self.tool = tool
        super().__init__(message or f"Scan results unavailable for '{tool}'")


class GateBlocked(PipelineError):
    """Raised when the security gate blocks a deployment."""

    def __init__(self, scope: str = "", rule: str = "", message: str = "") -> None:
        self.scope = scope
        self.rule = rule
        super().__init__(message or f"Security gate blocked {scope} deployment: {rule}")


class DeployFailed(PipelineError):
    """Raised when the deploy collaborator fails for one environment."""

    def __init__(self, environment: str = "", message: str = "") -> None:
        self.environment = environment
        super().__init__(message or f"Deployment to '{environment}' failed")


class ApprovalDenied(PipelineError):
    """Raised when a required approval is denied."""

    def __init__(self, approver: str = "", comment: str = "") -> None:
        self.approver = approver
        self.comment = comment
        text = "Production deployment approval denied"
        if approver:
            text += f" by {approver}"
        if comment:
            text += f": {comment}"
        super().__init__(text)


class RollbackTargetInvalid(PipelineError):
    """Raised when a rollback target does not exist or has no artifact."""

    pass


class RecordSealedError(PipelineError):
    """Raised when a terminal deployment record is mutated."""

    def __init__(self, run_id: str = "") -> None:
        self.run_id = run_id
        super().__init__(f"Deployment record '{run_id}' is sealed")
