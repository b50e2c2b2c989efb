"""Core logic for aikit-packager."""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

import zstandard
from pydantic import ValidationError

from .classify import classify_tree
from .errors import ConfigurationError, ManifestValidationError
from .layers import BlobStore, LayerBuilder, _sha256_file
from .mediatypes import (
    ANNOTATION_CREATED,
    ANNOTATION_DESCRIPTION,
    ANNOTATION_FILEPATH,
    ANNOTATION_REF_NAME,
    ANNOTATION_TITLE,
    GENERIC_ARTIFACT_TYPE,
    MODELPACK_ARTIFACT_TYPE,
    MODELPACK_CONFIG,
    OCI_EMPTY_CONFIG,
    OCI_IMAGE_MANIFEST,
    OCI_INDEX_FILENAME,
    OCI_LAYOUT_FILENAME,
    OCI_LAYOUT_VERSION,
    OCI_OCTET_STREAM,
)
from .models import (
    Descriptor,
    OCIIndex,
    OCIManifest,
    PackOptions,
    PackResult,
    SpecType,
)
from .sources import resolve_source

__all__ = [
    "LayoutReader",
    "Packager",
    "UNPACK_ERRORS",
    "determine_ref_name",
    "determine_title",
    "safe_ref_name",
    "validate_manifest_bytes",
]

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "aikitmodel"
DEFAULT_REF_NAME = "latest"
DEFAULT_SAFE_REF = "aikit/model"

_EMPTY_CONFIG_BYTES = b"{}"
_REF_PUNCTUATION = frozenset("/._-")


def safe_ref_name(name: str) -> str:
    """
    Normalise a free-form *name* into an OCI-safe reference.

    ASCII letters are lower-cased, digits and ``/ . _ -`` pass through and
    every other character becomes ``-``.

    >>> safe_ref_name("My Model 1")
    'my-model-1'
    """
    if not name:
        return DEFAULT_SAFE_REF
    out = []
    for ch in name:
        if "a" <= ch <= "z" or "0" <= ch <= "9" or ch in _REF_PUNCTUATION:
            out.append(ch)
        elif "A" <= ch <= "Z":
            out.append(ch.lower())
        else:
            out.append("-")
    return "".join(out)


def determine_title(name: Optional[str]) -> str:
    """The index title annotation; never empty."""
    return name or DEFAULT_TITLE


def determine_ref_name(name: Optional[str], ref_name: Optional[str] = None) -> str:
    """The index ref-name annotation; ``latest`` when nothing was supplied."""
    chosen = ref_name or name
    if not chosen:
        return DEFAULT_REF_NAME
    return safe_ref_name(chosen)


def validate_manifest_bytes(data: bytes) -> None:
    """
    Structural self-check of a serialized manifest.

    Raises ``ManifestValidationError`` unless *data* is a JSON object
    declaring ``schemaVersion`` 2 and the OCI image manifest media type.
    """
    if not data.startswith(b"{"):
        raise ManifestValidationError("manifest does not start with '{'")
    try:
        doc = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ManifestValidationError(f"manifest is not valid JSON: {exc}") from exc
    if doc.get("schemaVersion") != 2:
        raise ManifestValidationError(
            f"manifest schemaVersion is {doc.get('schemaVersion')!r}, expected 2"
        )
    if doc.get("mediaType") != OCI_IMAGE_MANIFEST:
        raise ManifestValidationError(
            f"manifest mediaType is {doc.get('mediaType')!r}, "
            f"expected {OCI_IMAGE_MANIFEST!r}"
        )


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _nested_output(source: Path, layout_dir: Path) -> list[str]:
    """The layout directory relative to *source* when it lies inside it."""
    src = source.resolve()
    layout = layout_dir.resolve()
    if layout == src:
        raise ConfigurationError(
            f"output directory {str(layout_dir)!r} must not be the source directory"
        )
    if layout.is_relative_to(src):
        return [layout.relative_to(src).as_posix()]
    return []


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Packager:
    """
    Packages a source tree into an OCI image layout directory.

    Layout::

        blobs/sha256/<hex>      # config, manifest and layer blobs
        index.json              # OCIIndex with a single manifest entry
        oci-layout              # {"imageLayoutVersion":"1.0.0"}
    """

    def pack(self, options: Union[PackOptions, dict[str, Any]]) -> PackResult:
        """
        Resolve ``options.source`` and package it into ``options.output_dir``.

        Any temporary download is released before returning, whether the
        run succeeded or not.
        """
        opts = self.validate_options(options)
        with resolve_source(
            opts.source, hf_token=opts.hf_token, exclude=opts.exclude
        ) as resolved:
            return self.pack_directory(resolved.path, opts)

    @staticmethod
    def validate_options(options: Union[PackOptions, dict[str, Any]]) -> PackOptions:
        if isinstance(options, PackOptions):
            return options
        try:
            return PackOptions.model_validate(options)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def pack_directory(
        self, source_dir: Union[str, Path], options: Union[PackOptions, dict[str, Any]]
    ) -> PackResult:
        """Package an already-resolved local *source_dir*."""
        opts = self.validate_options(options)
        source = Path(source_dir)
        if not source.is_dir():
            raise NotADirectoryError(f"{str(source_dir)!r} is not a directory.")

        # Fails on a bad pack mode before the layout directory is touched.
        store = BlobStore(opts.output_dir)
        builder = LayerBuilder(store, opts.pack_mode, opts.spec, opts.media_types)

        partition = classify_tree(
            source, opts.spec, opts.exclude, _nested_output(source, store.layout_dir)
        )

        store.ensure()
        stale_index = store.layout_dir / OCI_INDEX_FILENAME
        if stale_index.exists():
            logger.info("Removing previous %s", stale_index)
            stale_index.unlink()

        layers: list[Descriptor] = []
        for category, rel_paths in partition.items():
            layers.extend(builder.build(source, category, rel_paths))

        config_desc = store.write_bytes(
            _EMPTY_CONFIG_BYTES, self.config_media_type(opts)
        )
        manifest = self.create_manifest(
            layers, config_desc, self.artifact_type(opts)
        )
        manifest_desc = self.write_manifest(store, manifest)
        self.write_index(
            store.layout_dir,
            manifest_desc,
            name=opts.name,
            ref_name=opts.ref_name,
            spec=opts.spec,
        )
        logger.info(
            "Packed %s into %s (%d layer(s), manifest %s)",
            source,
            store.layout_dir,
            len(layers),
            manifest_desc.digest,
        )
        return PackResult(
            layout_path=str(store.layout_dir),
            manifest=manifest_desc,
            layers=layers,
        )

    @staticmethod
    def config_media_type(opts: PackOptions) -> str:
        if opts.spec is SpecType.GENERIC:
            return OCI_EMPTY_CONFIG
        return opts.media_types.manifest_config or MODELPACK_CONFIG

    @staticmethod
    def artifact_type(opts: PackOptions) -> str:
        if opts.artifact_type:
            return opts.artifact_type
        if opts.spec is SpecType.GENERIC:
            return GENERIC_ARTIFACT_TYPE
        return MODELPACK_ARTIFACT_TYPE

    def create_manifest(
        self,
        layers: list[Descriptor],
        config: Descriptor,
        artifact_type: str,
    ) -> OCIManifest:
        """Build an OCIManifest from a config descriptor and layer list."""
        return OCIManifest(
            artifact_type=artifact_type,
            config=config,
            layers=list(layers),
        )

    def write_manifest(self, store: BlobStore, manifest: OCIManifest) -> Descriptor:
        """Serialize, self-check and store *manifest*; returns its descriptor."""
        data = json.dumps(_dump(manifest), separators=(",", ":")).encode("utf-8")
        validate_manifest_bytes(data)
        return store.write_bytes(data, manifest.media_type)

    def write_index(
        self,
        layout_dir: Union[str, Path],
        manifest_desc: Descriptor,
        name: Optional[str] = None,
        ref_name: Optional[str] = None,
        spec: SpecType = SpecType.MODELPACK,
        created: Optional[str] = None,
    ) -> OCIIndex:
        """Write ``index.json`` and the ``oci-layout`` marker into *layout_dir*."""
        layout = Path(layout_dir)
        entry = manifest_desc.model_copy(
            update={
                "annotations": {
                    ANNOTATION_TITLE: determine_title(name),
                    ANNOTATION_REF_NAME: determine_ref_name(name, ref_name),
                    ANNOTATION_CREATED: created or _rfc3339_now(),
                    ANNOTATION_DESCRIPTION: (
                        f"AI model packaged by AIKit ({SpecType(spec).value})"
                    ),
                }
            }
        )
        index = OCIIndex(manifests=[entry])
        (layout / OCI_LAYOUT_FILENAME).write_text(
            json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}, separators=(",", ":")),
            encoding="utf-8",
        )
        (layout / OCI_INDEX_FILENAME).write_text(
            json.dumps(_dump(index), indent=2) + "\n", encoding="utf-8"
        )
        return index


class LayoutReader:
    """
    Reads back an OCI layout written by ``Packager``.

    Verifies blob integrity and unpacks layers into a plain file tree.
    """

    def __init__(self, layout_dir: Union[str, Path]) -> None:
        self.layout_dir = Path(layout_dir)
        self.store = BlobStore(self.layout_dir)

    def read_index(self) -> OCIIndex:
        index_path = self.layout_dir / OCI_INDEX_FILENAME
        if not index_path.is_file():
            raise FileNotFoundError(
                f"{OCI_INDEX_FILENAME} not found in layout {str(self.layout_dir)!r}."
            )
        return OCIIndex.model_validate(json.loads(index_path.read_text(encoding="utf-8")))

    def manifest_descriptor(self) -> Descriptor:
        index = self.read_index()
        if not index.manifests:
            raise ValueError("index.json lists no manifests.")
        return index.manifests[0]

    def read_manifest(self) -> OCIManifest:
        desc = self.manifest_descriptor()
        blob = self.store.path_for(desc.digest)
        if not blob.is_file():
            raise FileNotFoundError(f"manifest blob {desc.digest} is missing.")
        return OCIManifest.model_validate(json.loads(blob.read_bytes()))

    def verify(self) -> list[tuple[str, bool]]:
        """
        Verify the SHA-256 digest of every blob the layout references.

        Returns a list of (digest, is_valid) tuples for the manifest, the
        config and each layer, in that order.  A blob is valid when it
        exists and its content hashes to its name.
        """
        manifest_digest = self.manifest_descriptor().digest
        results = [(manifest_digest, self._blob_ok(manifest_digest))]
        if not results[0][1]:
            return results

        manifest = self.read_manifest()
        for desc in [manifest.config, *manifest.layers]:
            results.append((desc.digest, self._blob_ok(desc.digest)))
        return results

    def unpack(self, output_dir: Union[str, Path]) -> list[str]:
        """
        Restore the packaged files into *output_dir*.

        Returns the relative paths written, in layer order.
        """
        output = Path(output_dir)
        output.mkdir(parents=True, exist_ok=True)
        written: list[str] = []
        for layer in self.read_manifest().layers:
            blob = self.store.path_for(layer.digest)
            compression, sniffed = _layer_compression(layer, blob)
            if compression is None:
                written.append(self._unpack_raw(layer, blob, output))
                continue
            try:
                written.extend(_extract_tar(blob, compression, output))
            except UNPACK_ERRORS:
                if not sniffed:
                    raise
                # Content only looked like an archive.
                logger.warning(
                    "Layer %s is not a %s archive; restoring it as a file",
                    layer.digest,
                    compression,
                )
                written.append(self._unpack_raw(layer, blob, output))
        logger.info("Unpacked %d file(s) into %s", len(written), output)
        return written

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _blob_ok(self, digest: str) -> bool:
        blob = self.store.path_for(digest)
        return blob.is_file() and _sha256_file(blob) == digest

    @staticmethod
    def _unpack_raw(layer: Descriptor, blob: Path, output: Path) -> str:
        annotations = layer.annotations or {}
        rel = (
            annotations.get(ANNOTATION_FILEPATH)
            or annotations.get(ANNOTATION_TITLE)
            or layer.hex
        )
        target = _safe_target(output, rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(blob, target)
        return rel


# Raised when a layer blob is not the archive it claims or appears to be.
UNPACK_ERRORS = (tarfile.TarError, zstandard.ZstdError, gzip.BadGzipFile, EOFError)

_GZIP_MAGIC = b"\x1f\x8b"
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def _layer_compression(layer: Descriptor, blob: Path) -> tuple[Optional[str], bool]:
    """
    How to unpack *layer*: ``None`` for a plain file, else ``"tar"``,
    ``"gzip"`` or ``"zstd"``.  The flag is true when the answer was sniffed
    from the content because the media type does not say.
    """
    media_type = layer.media_type
    if media_type.endswith(".raw") or media_type == OCI_OCTET_STREAM:
        return None, False
    if media_type.endswith("+gzip"):
        return "gzip", False
    if media_type.endswith("+zstd"):
        return "zstd", False
    if media_type.endswith(".tar"):
        return "tar", False
    with open(blob, "rb") as fh:
        head = fh.read(512)
    if head.startswith(_GZIP_MAGIC):
        return "gzip", True
    if head.startswith(_ZSTD_MAGIC):
        return "zstd", True
    if tarfile.is_tarfile(blob):
        return "tar", True
    return None, True


def _safe_target(output: Path, rel: str) -> Path:
    target = (output / rel).resolve()
    if not target.is_relative_to(output.resolve()):
        raise ValueError(f"refusing to write outside {str(output)!r}: {rel!r}")
    return target


def _open_layer(fh: BinaryIO, compression: str) -> BinaryIO:
    if compression == "gzip":
        return gzip.GzipFile(fileobj=fh, mode="rb")
    if compression == "zstd":
        return zstandard.ZstdDecompressor().stream_reader(fh)
    return fh


def _extract_tar(blob: Path, compression: str, output: Path) -> list[str]:
    written: list[str] = []
    with open(blob, "rb") as fh, _open_layer(fh, compression) as stream:
        with tarfile.open(fileobj=stream, mode="r|") as tar:
            for member in tar:
                if not member.isfile():
                    continue
                target = _safe_target(output, member.name)
                target.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                written.append(member.name)
    return written
