"""Content-addressed blob store and layer construction for aikit-packager."""

from __future__ import annotations

import contextlib
import gzip
import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Sequence, Union

import zstandard

from .errors import ConfigurationError
from .mediatypes import (
    ANNOTATION_FILEPATH,
    ANNOTATION_FILE_METADATA,
    ANNOTATION_MEDIATYPE_UNTESTED,
    ANNOTATION_TITLE,
    GENERIC_LAYER_MEDIA_TYPES,
    OCI_BLOBS_DIR,
    modelpack_media_type,
)
from .models import Category, Descriptor, MediaTypeOverrides, PackMode, SpecType

__all__ = [
    "BlobStore",
    "LayerBuilder",
    "parse_pack_mode",
]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 65536
_FILE_MODE = 0o644
_EPOCH = "1970-01-01T00:00:00Z"
_ZSTD_LEVEL = 3


def _sha256_file(path: Union[str, Path]) -> str:
    """Return 'sha256:<hex>' digest for the file at *path*."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def _sha256_bytes(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def parse_pack_mode(value: Union[str, PackMode]) -> PackMode:
    """Coerce *value* to a ``PackMode`` or raise ``ConfigurationError``."""
    try:
        return PackMode(value)
    except ValueError as exc:
        valid = ", ".join(m.value for m in PackMode)
        raise ConfigurationError(
            f"unknown pack mode {value!r} (expected one of: {valid})"
        ) from exc


class BlobStore:
    """
    The ``blobs/sha256`` directory of an OCI layout.

    Blobs are staged in a temporary file next to their final location and
    renamed into place once their digest is known, so a blob path only ever
    holds complete content matching its name.
    """

    def __init__(self, layout_dir: Union[str, Path]) -> None:
        self.layout_dir = Path(layout_dir)
        self.blobs_dir = self.layout_dir / OCI_BLOBS_DIR

    def ensure(self) -> None:
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, digest: str) -> Path:
        algorithm, _, hex_digest = digest.partition(":")
        if algorithm != "sha256" or not hex_digest:
            raise ValueError(f"unsupported digest {digest!r}")
        return self.blobs_dir / hex_digest

    def exists(self, digest: str) -> bool:
        return self.path_for(digest).is_file()

    @contextlib.contextmanager
    def staging_file(self) -> Iterator[Path]:
        """Yield a fresh temporary path inside the store, removed on exit."""
        fd, name = tempfile.mkstemp(prefix=".staging-", dir=str(self.blobs_dir))
        os.close(fd)
        staged = Path(name)
        try:
            yield staged
        finally:
            staged.unlink(missing_ok=True)

    def commit(
        self,
        staged: Path,
        media_type: str,
        annotations: Optional[dict[str, str]] = None,
    ) -> Descriptor:
        """Hash *staged*, move it to its content address and describe it."""
        digest = _sha256_file(staged)
        size = staged.stat().st_size
        os.replace(staged, self.path_for(digest))
        logger.debug("Stored blob %s (%d bytes, %s)", digest, size, media_type)
        return Descriptor(
            media_type=media_type,
            digest=digest,
            size=size,
            annotations=annotations,
        )

    def write_bytes(
        self,
        data: bytes,
        media_type: str,
        annotations: Optional[dict[str, str]] = None,
    ) -> Descriptor:
        """Store *data* as a blob and return its descriptor."""
        with self.staging_file() as staged:
            staged.write_bytes(data)
            return self.commit(staged, media_type, annotations)


# ---------------------------------------------------------------------------
# Deterministic tar helpers
# ---------------------------------------------------------------------------


def _tar_info(rel_path: str, size: int) -> tarfile.TarInfo:
    """A tar header carrying nothing from the host but name and size."""
    info = tarfile.TarInfo(name=rel_path)
    info.size = size
    info.mode = _FILE_MODE
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.mtime = 0
    info.type = tarfile.REGTYPE
    return info


@contextlib.contextmanager
def _compressed(fh: BinaryIO, mode: PackMode) -> Iterator[BinaryIO]:
    """Wrap *fh* in the compressor *mode* asks for; plain tar passes through."""
    if mode is PackMode.TAR_GZIP:
        # No file name and a zero mtime in the gzip header.
        with gzip.GzipFile(filename="", mode="wb", fileobj=fh, mtime=0) as gz:
            yield gz
    elif mode is PackMode.TAR_ZSTD:
        cctx = zstandard.ZstdCompressor(level=_ZSTD_LEVEL)
        with cctx.stream_writer(fh, closefd=False) as writer:
            yield writer
    else:
        yield fh


def _write_tar(
    dest: Path, source_dir: Path, rel_paths: Sequence[str], mode: PackMode
) -> int:
    """Archive *rel_paths* into *dest*; returns total uncompressed file bytes."""
    total = 0
    with open(dest, "wb") as raw, _compressed(raw, mode) as stream:
        with tarfile.open(
            fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT
        ) as tar:
            for rel in rel_paths:
                full = source_dir / rel
                size = full.stat().st_size
                with open(full, "rb") as src:
                    tar.addfile(_tar_info(rel, size), src)
                total += size
    return total


def _file_metadata(name: str, size: int, files: Optional[int] = None) -> str:
    meta: dict[str, object] = {
        "name": name,
        "mode": _FILE_MODE,
        "uid": 0,
        "gid": 0,
        "size": size,
        "mtime": _EPOCH,
        "typeflag": 0,
    }
    if files is not None:
        meta["files"] = files
    return json.dumps(meta, separators=(",", ":"))


class LayerBuilder:
    """
    Turns a category's sorted file list into layer blobs.

    ``raw`` stores each file as its own blob.  The archive modes store one
    tar per file for the weights category and a single tar for every other
    category (and for the generic spec), optionally gzip- or
    zstd-compressed.
    """

    def __init__(
        self,
        store: BlobStore,
        mode: Union[str, PackMode],
        spec: SpecType = SpecType.MODELPACK,
        media_types: Optional[MediaTypeOverrides] = None,
    ) -> None:
        self.store = store
        self.mode = parse_pack_mode(mode)
        self.spec = SpecType(spec)
        self.media_types = media_types or MediaTypeOverrides()

    def media_type_for(self, category: Category) -> str:
        if self.spec is SpecType.GENERIC:
            return GENERIC_LAYER_MEDIA_TYPES[self.mode]
        override = self.media_types.for_category(category)
        return override or modelpack_media_type(category, self.mode)

    def build(
        self, source_dir: Path, category: Category, rel_paths: Sequence[str]
    ) -> list[Descriptor]:
        """
        Build the layers for *category* from *rel_paths* under *source_dir*.

        Returns an empty list when there is nothing to package.
        """
        if not rel_paths:
            return []
        source_dir = Path(source_dir)
        media_type = self.media_type_for(category)

        if self.mode is PackMode.RAW:
            descs = [self._raw_layer(source_dir, rel, media_type) for rel in rel_paths]
        elif category is Category.WEIGHTS:
            descs = [
                self._file_archive_layer(source_dir, rel, media_type)
                for rel in rel_paths
            ]
        else:
            descs = [
                self._category_archive_layer(source_dir, category, rel_paths, media_type)
            ]
        logger.info(
            "Built %d %s layer(s) from %d file(s) [%s]",
            len(descs),
            category.value,
            len(rel_paths),
            self.mode.value,
        )
        return descs

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _file_annotations(self, rel: str, size: int) -> dict[str, str]:
        if self.spec is SpecType.GENERIC:
            return {ANNOTATION_TITLE: rel}
        return {
            ANNOTATION_FILEPATH: rel,
            ANNOTATION_FILE_METADATA: _file_metadata(rel, size),
            ANNOTATION_MEDIATYPE_UNTESTED: "true",
        }

    def _raw_layer(self, source_dir: Path, rel: str, media_type: str) -> Descriptor:
        full = source_dir / rel
        with self.store.staging_file() as staged:
            with open(full, "rb") as src, open(staged, "wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK_SIZE)
            size = staged.stat().st_size
            return self.store.commit(
                staged, media_type, self._file_annotations(rel, size)
            )

    def _file_archive_layer(
        self, source_dir: Path, rel: str, media_type: str
    ) -> Descriptor:
        with self.store.staging_file() as staged:
            size = _write_tar(staged, source_dir, [rel], self.mode)
            return self.store.commit(
                staged, media_type, self._file_annotations(rel, size)
            )

    def _category_archive_layer(
        self,
        source_dir: Path,
        category: Category,
        rel_paths: Sequence[str],
        media_type: str,
    ) -> Descriptor:
        with self.store.staging_file() as staged:
            total = _write_tar(staged, source_dir, rel_paths, self.mode)
            annotations: Optional[dict[str, str]] = None
            if self.spec is SpecType.MODELPACK:
                annotations = {
                    ANNOTATION_FILEPATH: category.value,
                    ANNOTATION_FILE_METADATA: _file_metadata(
                        category.value, total, files=len(rel_paths)
                    ),
                    ANNOTATION_MEDIATYPE_UNTESTED: "true",
                }
            return self.store.commit(staged, media_type, annotations)
