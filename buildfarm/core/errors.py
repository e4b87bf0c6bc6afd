"""
Error taxonomy for the build pipeline.

ValidationError and ToolError are fatal to a job. RenderError is recorded per
route and never aborts a job. AuthError is raised at the HTTP boundary only.
"""
from typing import Optional


class BuildFarmError(Exception):
    """Base class for all build worker errors."""
    pass


class ValidationError(BuildFarmError):
    """Uploaded archive or project failed validation."""
    pass


class TooManyFilesError(ValidationError):
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Too many files: {count} > {limit}")


class TooLargeError(ValidationError):
    def __init__(self, size: int, limit: int, what: str = "Uncompressed size"):
        self.size = size
        self.limit = limit
        super().__init__(f"{what} exceeds limit: {size} > {limit} bytes")


class PathTraversalError(ValidationError):
    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"Unsafe path in archive: {entry}")


class InvalidArchiveError(ValidationError):
    pass


class ProjectNotFoundError(ValidationError):
    pass


class ToolError(BuildFarmError):
    """External process failed or ran past its deadline."""
    pass


class ToolTimeoutError(ToolError):
    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s: {command}")


class NonZeroExitError(ToolError):
    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        message = f"Command failed with code {exit_code}: {command}"
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)


class RenderError(BuildFarmError):
    """A single route could not be pre-rendered."""

    def __init__(self, message: str, route: Optional[str] = None):
        self.route = route
        super().__init__(message)


class AuthError(BuildFarmError):
    """Missing or invalid credential or download token."""
    pass
