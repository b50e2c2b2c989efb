"""File classification for aikit-packager."""

from __future__ import annotations

import fnmatch
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, Sequence

from .mediatypes import (
    CATEGORY_ORDER,
    CODE_EXTENSIONS,
    CONFIG_EXTENSIONS,
    CONFIG_NAMES,
    CONFIG_PATTERNS,
    DATASET_EXTENSIONS,
    DOC_EXTENSIONS,
    DOC_PREFIXES,
    EXCLUDED_SUFFIXES,
    EXCLUDED_TOP_LEVEL_DIRS,
    LARGE_FILE_THRESHOLD,
    WEIGHT_EXTENSIONS,
)
from .models import Category, SpecType

__all__ = [
    "classify_file",
    "classify_tree",
    "list_source_files",
]

logger = logging.getLogger(__name__)


def classify_file(name: str, size: int) -> Category:
    """
    Return the modelpack category for a file called *name* of *size* bytes.

    Only the lower-cased base name is inspected; *size* matters only when
    no name rule matches.
    """
    base = os.path.basename(name).lower()
    if base.endswith(WEIGHT_EXTENSIONS):
        return Category.WEIGHTS
    if base.startswith(DOC_PREFIXES) or base.endswith(DOC_EXTENSIONS):
        return Category.DOCS
    if (
        base in CONFIG_NAMES
        or any(fnmatch.fnmatchcase(base, pattern) for pattern in CONFIG_PATTERNS)
        or base.endswith(CONFIG_EXTENSIONS)
    ):
        return Category.CONFIG
    if base.endswith(CODE_EXTENSIONS):
        return Category.CODE
    if base.endswith(DATASET_EXTENSIONS):
        return Category.DATASET
    if size >= LARGE_FILE_THRESHOLD:
        return Category.WEIGHTS
    return Category.CONFIG


def _is_excluded(rel_path: str, patterns: Sequence[str]) -> bool:
    if rel_path.endswith(EXCLUDED_SUFFIXES):
        return True
    base = rel_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatchcase(rel_path, pattern) or fnmatch.fnmatchcase(base, pattern)
        for pattern in patterns
    )


def list_source_files(
    root: Path,
    exclude: Iterable[str] = (),
    skip_dirs: Iterable[str] = (),
) -> list[str]:
    """
    Return every packageable regular file under *root*.

    Paths are relative, forward-slash separated and sorted.  Lock files,
    the top-level ``.cache``/``.git`` directories, the relative directories
    in *skip_dirs* and anything matching an *exclude* glob are skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(f"{str(root)!r} is not a directory.")

    patterns = list(exclude)
    skipped = {PurePosixPath(d).as_posix() for d in skip_dirs}
    files: list[str] = []

    def _raise(exc: OSError) -> None:
        raise exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        current = Path(dirpath)
        if current == root:
            dirnames[:] = [d for d in dirnames if d not in EXCLUDED_TOP_LEVEL_DIRS]
        if skipped:
            dirnames[:] = [
                d
                for d in dirnames
                if (current / d).relative_to(root).as_posix() not in skipped
            ]
        dirnames.sort()
        for filename in filenames:
            full = current / filename
            if not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            if _is_excluded(rel, patterns):
                logger.debug("Skipping excluded file %s", rel)
                continue
            files.append(rel)

    files.sort()
    return files


def classify_tree(
    root: Path,
    spec: SpecType = SpecType.MODELPACK,
    exclude: Iterable[str] = (),
    skip_dirs: Iterable[str] = (),
) -> dict[Category, list[str]]:
    """
    Partition the files under *root* into categories.

    For the modelpack spec every category of ``CATEGORY_ORDER`` is present
    in the result (possibly empty), in emission order.  The generic spec
    returns a single ``Category.GENERIC`` entry holding every file.
    """
    root = Path(root)
    files = list_source_files(root, exclude, skip_dirs)

    if spec is SpecType.GENERIC:
        logger.info("Collected %d file(s) from %s", len(files), root)
        return {Category.GENERIC: files}

    partition: dict[Category, list[str]] = {category: [] for category in CATEGORY_ORDER}
    for rel in files:
        size = (root / rel).stat().st_size
        partition[classify_file(rel, size)].append(rel)

    logger.info(
        "Classified %d file(s) from %s: %s",
        len(files),
        root,
        ", ".join(f"{c.value}={len(v)}" for c, v in partition.items()),
    )
    return partition
