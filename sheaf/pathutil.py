from __future__ import annotations

import ntpath
import os
from typing import Iterable, Union

PathLike = Union[str, "os.PathLike[str]"]

IS_WINDOWS = os.name == "nt"


def norm_path(p: str, *, windows: bool = IS_WINDOWS) -> str:
    """Normalize archive paths to a canonical forward-slash form.

    Rules:
    - Only '/' separates segments; with ``windows`` set, backslashes do too
      and a drive or UNC volume prefix is dropped
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    if windows:
        p = p.replace("\\", "/")
        drive, rest = ntpath.splitdrive(p)
        if drive and (rest.startswith("/") or drive.startswith("//")):
            p = rest
    p = p.strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Path may not contain '..'")
    return "/".join(parts)


def relative_archive_path(path: PathLike, root: PathLike) -> str:
    """Archive path of ``path`` relative to ``root``.

    Purely lexical: the current working directory is never consulted, so
    both arguments must be spelled the same way (both absolute or both
    relative to the same base). Returns "" for the root itself.

    Components are split on ``os.sep`` only and joined with '/'; names are
    kept verbatim, so a POSIX name holding a backslash or a colon survives.
    """
    p = os.path.normpath(os.fspath(path))
    r = os.path.normpath(os.fspath(root))
    if p == r:
        return ""
    if r == os.curdir:
        if os.path.isabs(p) or p == os.pardir or p.startswith(os.pardir + os.sep):
            raise ValueError(f"{path!r} is not under {root!r}")
        return _join_components(p)
    prefix = r if r.endswith(os.sep) else r + os.sep
    if not p.startswith(prefix):
        raise ValueError(f"{path!r} is not under {root!r}")
    return _join_components(p[len(prefix) :])


def _join_components(rel: str) -> str:
    # normpath has already folded altsep into os.sep
    return "/".join(rel.split(os.sep))


def join_archive_path(prefix: str, rel: str) -> str:
    if not prefix:
        return rel
    if not rel:
        return prefix
    return f"{prefix}/{rel}"


def destination_path(dest_root: PathLike, arc_path: str) -> str:
    """Filesystem location for ``arc_path`` under ``dest_root``.

    An empty ``dest_root`` means the current directory.
    """
    parts = [q for q in norm_path(arc_path).split("/") if q]
    base = os.fspath(dest_root) or os.curdir
    return os.path.join(base, *parts)


def is_selected(arc_path: str, wanted: Iterable[str]) -> bool:
    """True when ``arc_path`` equals or is nested under one of ``wanted``."""
    for w in wanted:
        if not w or arc_path == w or arc_path.startswith(w + "/"):
            return True
    return False
