"""Error definitions for coreos_customizer.

Every pipeline step raises its own error type carrying a stable ``code``
for structured handling. All of them share the CustomizeError base so the
CLI can report any build failure the same way.
"""

from __future__ import annotations


class CustomizeError(Exception):
    """Base error for image customization failures."""

    def __init__(self, message: str, code: str = "customize_error") -> None:
        """Initialize CustomizeError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class FetchError(CustomizeError):
    """Raised when an artifact download fails."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        super().__init__(message, code)


class ExtractError(CustomizeError):
    """Raised when the initram container cannot be unpacked."""

    def __init__(self, message: str, code: str = "extract_error") -> None:
        super().__init__(message, code)


class RebuildError(CustomizeError):
    """Raised when the embedded filesystem image cannot be rebuilt."""

    def __init__(
        self,
        message: str,
        code: str = "rebuild_error",
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


class PackError(CustomizeError):
    """Raised when the initram container cannot be written."""

    def __init__(self, message: str, code: str = "pack_error") -> None:
        super().__init__(message, code)


class PathResolutionError(CustomizeError):
    """Raised when an input path cannot be made absolute."""

    def __init__(self, message: str, code: str = "path_error") -> None:
        super().__init__(message, code)


class CommandError(CustomizeError):
    """Raised when an external tool fails to run or exits non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "command_error",
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code
        self.stderr = stderr


__all__ = [
    "CommandError",
    "CustomizeError",
    "ExtractError",
    "FetchError",
    "PackError",
    "PathResolutionError",
    "RebuildError",
]
