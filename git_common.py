"""
Common Git functionalities for the repository update scripts.

This module contains the shared options, errors and directory helpers used by
the gateway and the update walker.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from rich.console import Console


class FilesystemError(OSError):
    """Raised when a directory cannot be listed during the traversal."""


@dataclass
class GitOptions:
    """Base class for Git operation options."""

    console: Optional[Console] = None  # Console object for output
    verbose: bool = False  # Show verbose output


def is_git_directory(path: Path) -> bool:
    """
    Checks if a path is the administrative `.git` directory of a repository.

    Args:
        path: Path to check

    Returns:
        True if the path is named `.git`, otherwise False
    """
    return path.name == ".git"


def get_subdirectories(path: Path) -> List[Path]:
    """
    Returns all subdirectories of the specified path, sorted by name.

    `.git` directories are never returned.

    Args:
        path: Path where to search for subdirectories

    Returns:
        List of found subdirectories

    Raises:
        FilesystemError: If the directory cannot be read
    """
    try:
        items = sorted(path.iterdir())
    except OSError as e:
        raise FilesystemError(f"Cannot read directory {path}: {e}") from e
    return [item for item in items if item.is_dir() and not is_git_directory(item)]
