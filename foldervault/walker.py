"""Deterministic directory traversal with name-based exclusions.

The walker never raises for per-path problems. Anything it cannot or will not
pack (unlistable directories, symlinks, special files, undecodable names) is
yielded as a :class:`TreeEntry` with a non-``ok`` status so the caller decides
whether to warn, soft-skip or abort.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .constants import TRASH_NAMES, VOLUME_METADATA_NAMES


log = logging.getLogger(__name__)


class EntryStatus(str, Enum):
    OK = "ok"
    SOFT_SKIP = "soft-skip"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class TreeEntry:
    rel_path: str
    fs_path: str
    size: int = 0  # as seen by the walk; the packer records the size at open time
    status: EntryStatus = EntryStatus.OK
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is EntryStatus.OK


@dataclass(frozen=True)
class ExclusionRules:
    """Basenames the walker refuses to descend into or pack.

    ``names`` are skipped silently wherever they appear. ``volume_metadata``
    entries are skipped too, but only once they could be inspected; a
    failure at or below one of them is a soft skip rather than an error.
    """

    names: FrozenSet[str]
    volume_metadata: FrozenSet[str] = VOLUME_METADATA_NAMES

    @classmethod
    def for_run(
        cls,
        destination_name: Optional[str] = None,
        temp_archive_name: Optional[str] = None,
        extra: Iterable[str] = (),
    ) -> "ExclusionRules":
        names = set(TRASH_NAMES)
        for n in (destination_name, temp_archive_name):
            if n:
                names.add(n)
        names.update(x for x in extra if x)
        return cls(names=frozenset(names))

    def excludes(self, name: str) -> bool:
        return name in self.names

    def is_volume_metadata(self, rel_path: str) -> bool:
        return any(part in self.volume_metadata for part in rel_path.split("/"))


def _join(rel: str, name: str) -> str:
    return f"{rel}/{name}" if rel else name


def _failure(rules: ExclusionRules, rel_path: str, fs_path: str, reason: str) -> TreeEntry:
    status = EntryStatus.SOFT_SKIP if rules.is_volume_metadata(rel_path) else EntryStatus.UNREADABLE
    return TreeEntry(rel_path=rel_path, fs_path=fs_path, status=status, reason=reason)


def _list_dir(fs_path: str) -> List[Tuple[str, os.DirEntry]]:
    with os.scandir(fs_path) as it:
        entries = [(e.name, e) for e in it]
    # Code point order keeps traversal identical across runs
    entries.sort(key=lambda item: item[0])
    return entries


def _inspect_volume_metadata(
    rules: ExclusionRules, rel_path: str, fs_path: str, dirent: os.DirEntry
) -> Optional[TreeEntry]:
    # Never packed; only an access failure is worth reporting
    try:
        if dirent.is_dir(follow_symlinks=False):
            _list_dir(fs_path)
        else:
            dirent.stat(follow_symlinks=False)
    except OSError as exc:
        return _failure(rules, rel_path, fs_path, f"cannot access volume metadata: {exc.strerror or exc}")
    return None


def walk_tree(root: str, rules: ExclusionRules) -> Iterator[TreeEntry]:
    """Yield every file under ``root`` depth-first in sorted name order."""
    root = os.fspath(root)
    yield from _walk_dir(root, "", rules)


def _walk_dir(fs_dir: str, rel_dir: str, rules: ExclusionRules) -> Iterator[TreeEntry]:
    try:
        listing = _list_dir(fs_dir)
    except OSError as exc:
        log.debug("cannot list %s: %s", fs_dir, exc)
        yield _failure(rules, rel_dir or ".", fs_dir, f"cannot list directory: {exc.strerror or exc}")
        return

    for name, dirent in listing:
        rel = _join(rel_dir, name)
        fs_path = dirent.path
        if name in rules.volume_metadata:
            failed = _inspect_volume_metadata(rules, rel, fs_path, dirent)
            if failed is not None:
                yield failed
            else:
                log.debug("skipped volume metadata %s", rel)
            continue
        if rules.excludes(name):
            log.debug("excluded %s", rel)
            continue
        try:
            name.encode("utf-8")
        except UnicodeEncodeError:
            yield _failure(rules, rel, fs_path, "name is not valid UTF-8")
            continue
        try:
            st = dirent.stat(follow_symlinks=False)
        except OSError as exc:
            yield _failure(rules, rel, fs_path, f"cannot stat: {exc.strerror or exc}")
            continue

        if stat.S_ISLNK(st.st_mode):
            yield _failure(rules, rel, fs_path, "symbolic link not followed")
        elif stat.S_ISDIR(st.st_mode):
            yield from _walk_dir(fs_path, rel, rules)
        elif stat.S_ISREG(st.st_mode):
            yield TreeEntry(rel_path=rel, fs_path=fs_path, size=st.st_size)
        else:
            yield _failure(rules, rel, fs_path, "special file not packed")
