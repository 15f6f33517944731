"""Path helpers for build inputs."""

from __future__ import annotations

from pathlib import Path

from coreos_customizer.errors import PathResolutionError


def resolve_path(value: str) -> Path:
    """Convert a user-supplied path to an absolute path.

    Args:
        value: Path as given on the command line.

    Returns:
        Absolute path (symlinks are not resolved).

    Raises:
        PathResolutionError: If the value is empty or the current
            working directory cannot be determined.
    """
    if not value:
        raise PathResolutionError("Empty path", code="empty_path")

    try:
        return Path(value).expanduser().absolute()
    except (OSError, RuntimeError) as e:
        raise PathResolutionError(
            f"Cannot make {value!r} absolute: {e}",
        ) from e


__all__ = ["resolve_path"]
