"""
Utility functions for file system operations and name handling.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem usage
- Ensuring directory creation
- Splitting file names into stem and extension
- Allocating unique, case-insensitive archive entry names
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Set

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("Page 12 (recto)", "folio")
        "page-12-recto"
        >>> sanitize_label("@#$", "folio")
        "folio"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Args:
        filename: The filename to split (can include path)

    Returns:
        A tuple of (stem, extension) where extension includes the dot

    Example:
        >>> split_extension("0001.xml")
        ("0001", ".xml")
    """
    path = Path(filename)
    return path.stem, path.suffix


def unique_name(filename: str, taken: Set[str]) -> str:
    """
    Return a name not yet in ``taken``, suffixing ``_N`` to the stem on collision.

    The comparison is case-insensitive; ``taken`` holds lowercased names and
    is updated with the returned name.

    Example:
        >>> taken = set()
        >>> unique_name("Page.xml", taken), unique_name("page.xml", taken)
        ("Page.xml", "page_1.xml")
    """
    stem, extension = split_extension(filename)
    candidate = filename
    index = 0
    while candidate.lower() in taken:
        index += 1
        candidate = f"{stem}_{index}{extension}"
    taken.add(candidate.lower())
    return candidate
