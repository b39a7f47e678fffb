"""
Error Taxonomy
==============
Exceptions shared by every layer of the execution engine.

    ConfigurationError     — fatal; raised before any container starts
    ContainerLaunchError   — fails only the step that launched
    CommandExecutionError  — non-zero exit; recorded as Failed, never a crash
    ResourceExhaustion     — no pool slot free (distinct from a command failure)
    PartialFileError       — malformed or partial result record; file is skipped
"""
from typing import Optional


class IsobuildError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(IsobuildError):
    """Invalid plan or settings: missing field, bad project root, dependency cycle."""


class ContainerLaunchError(IsobuildError):

    def __init__(self, message: str, kind: str = "launch_error") -> None:
        super().__init__(message)
        self.kind = kind


class CommandExecutionError(IsobuildError):

    def __init__(self, message: str, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ResourceExhaustion(IsobuildError):

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"Resource pool exhausted: requested={requested} available={available}")
        self.requested = requested
        self.available = available


class PartialFileError(IsobuildError):

    def __init__(self, path: str, reason: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
        self.missing = missing or []
