"""
Path translation between the host filesystem and execution environments.

Host paths in Windows form (``C:\\work\\db``) are mapped to the WSL mount view
(``/mnt/c/work/db``). Workspace containment checks are lexical and never
touch the filesystem.
"""

import ntpath
import os
import re

from errors import InvalidPath, PathOutsideWorkspace

_DRIVE_RE = re.compile(r"^[A-Za-z]:$")


def translate_host_path(value: str) -> str:
    """
    Map an absolute host path to its guest mount path.

    Args:
        value: Windows-style absolute path, or an already guest-form path

    Returns:
        Path under ``/mnt/<drive>``; guest-form input is returned unchanged

    Raises:
        InvalidPath: If the path is empty or not absolute in host form
    """
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidPath("path is empty")
    if cleaned.startswith("/"):
        return cleaned

    drive, rest = ntpath.splitdrive(cleaned)
    if not _DRIVE_RE.match(drive):
        raise InvalidPath(f"path is not absolute: {cleaned}")
    # "C:foo" is relative to the drive's current directory
    if rest and rest[0] not in "\\/":
        raise InvalidPath(f"path is not absolute: {cleaned}")

    letter = drive[0].lower()
    rest = rest.lstrip("\\/").replace("\\", "/")
    if not rest:
        return f"/mnt/{letter}"
    return f"/mnt/{letter}/{rest}"


def is_within(base: str, target: str) -> bool:
    """Return True if target is base itself or one of its descendants."""
    base = os.path.normpath(base)
    target = os.path.normpath(target)
    try:
        rel = os.path.relpath(target, base)
    except ValueError:
        # different drives on Windows
        return False
    if rel == os.curdir:
        return True
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep)


def contain_within_root(root: str, candidate: str) -> str:
    """
    Express candidate relative to root when it lies inside it.

    Relative candidates and candidates outside the root are returned
    unchanged.
    """
    if not candidate or not candidate.strip():
        return candidate
    if not os.path.isabs(candidate):
        return candidate
    if not is_within(root, candidate):
        return candidate
    return os.path.relpath(os.path.normpath(candidate), os.path.normpath(root))


def require_within_root(root: str, candidate: str) -> str:
    """
    Return candidate relative to root, failing if it escapes the root.

    Relative candidates are interpreted against root.

    Raises:
        PathOutsideWorkspace: If the cleaned candidate is not under root
    """
    root = os.path.normpath(root)
    path = candidate
    if not os.path.isabs(path):
        path = os.path.join(root, path)
    path = os.path.normpath(path)
    if not is_within(root, path):
        raise PathOutsideWorkspace(path, root)
    return os.path.relpath(path, root)
