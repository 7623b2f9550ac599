from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from typing import Iterator, List

from .errors import TraversalError
from .pathutil import PathLike, relative_archive_path


@dataclass
class WalkNode:
    path: str  # filesystem path, spelled relative to the walk root as given
    rel: str  # archive-style path relative to the root; "" for the root
    st: os.stat_result


def _lstat(path: str) -> os.stat_result:
    try:
        return os.lstat(path)
    except OSError as exc:
        raise TraversalError(path, f"cannot stat: {exc.strerror or exc}") from exc


def _sorted_names(path: str) -> List[str]:
    try:
        with os.scandir(path) as it:
            return sorted(d.name for d in it)
    except OSError as exc:
        raise TraversalError(path, f"cannot list directory: {exc.strerror or exc}") from exc


def iter_tree(root: PathLike) -> Iterator[WalkNode]:
    """Walk ``root`` depth-first, pre-order, siblings in name order.

    Driven by an explicit stack of pending paths, so deep trees do not hit
    the recursion limit. Nodes are stat'ed with lstat when popped; symbolic
    links are reported but never followed. The generator is lazy and can be
    consumed once.
    """
    root = os.fspath(root)
    stack: List[str] = [root]
    while stack:
        path = stack.pop()
        st = _lstat(path)
        yield WalkNode(path=path, rel=relative_archive_path(path, root), st=st)
        if stat.S_ISDIR(st.st_mode):
            names = _sorted_names(path)
            stack.extend(os.path.join(path, name) for name in reversed(names))
