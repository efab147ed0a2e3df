"""
kprovision/utils/unique_file.py

Allocates an output file that never overwrites an earlier run's file.

Candidates are tried in order: `<base><ext>`, `<base>-1<ext>`, `<base>-2<ext>`, ...
Each candidate is opened with exclusive create, so checking for an existing
file and creating the new one is a single step; two concurrent allocations in
the same directory cannot end up with the same name.
"""

from __future__ import annotations

import os
from typing import IO, Tuple

DEFAULT_MAX_ATTEMPTS = 4096


class UniqueFileError(Exception):
    """No free file name was found within the attempt limit."""


def candidate_name(base: str, ext: str, index: int) -> str:
    """`base.ext` for index 0, `base-<index>.ext` otherwise."""
    if index > 0:
        return f"{base}-{index}{ext}"
    return f"{base}{ext}"


def allocate_unique_file(
    base: str = "kismatic-cluster",
    ext: str = ".yaml",
    directory: str = ".",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Tuple[str, IO[str]]:
    """
    Create a new file with the first free name and return it opened for writing.

    Args:
        base: File name without extension.
        ext: Extension including the dot.
        directory: Directory to create the file in.
        max_attempts: Number of candidate names to try before giving up.

    Returns:
        (path, handle). The caller owns the handle and must close it.

    Raises:
        UniqueFileError: If every candidate up to `max_attempts` already exists.
    """
    for index in range(max_attempts):
        path = os.path.join(directory, candidate_name(base, ext, index))
        try:
            handle = open(path, "x", encoding="utf-8")
        except FileExistsError:
            continue
        return path, handle

    raise UniqueFileError(
        f"No free file name for '{base}{ext}' in '{directory}' "
        f"after {max_attempts} attempts."
    )
