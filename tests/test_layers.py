"""Tests for aikit_packager.layers."""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import os
import tarfile
from pathlib import Path

import pytest
import zstandard

from aikit_packager.errors import ConfigurationError
from aikit_packager.layers import (
    BlobStore,
    LayerBuilder,
    _sha256_bytes,
    _sha256_file,
    parse_pack_mode,
)
from aikit_packager.mediatypes import (
    ANNOTATION_FILEPATH,
    ANNOTATION_FILE_METADATA,
    ANNOTATION_MEDIATYPE_UNTESTED,
    ANNOTATION_TITLE,
)
from aikit_packager.models import (
    Category,
    Descriptor,
    MediaTypeOverrides,
    PackMode,
    SpecType,
)


def _blob(store: BlobStore, desc: Descriptor) -> bytes:
    return store.path_for(desc.digest).read_bytes()


def _tar_members(data: bytes) -> list[tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        return tar.getmembers()


def _staging_leftovers(store: BlobStore) -> list[str]:
    return [p.name for p in store.blobs_dir.iterdir() if p.name.startswith(".staging-")]


# ---------------------------------------------------------------------------
# _sha256_bytes / _sha256_file
# ---------------------------------------------------------------------------


class TestSha256Helpers:
    def test_sha256_bytes_known_value(self) -> None:
        expected = "sha256:" + hashlib.sha256(b"hello").hexdigest()
        assert _sha256_bytes(b"hello") == expected

    def test_sha256_file_matches_bytes(self, tmp_path: Path) -> None:
        data = b"test file content"
        f = tmp_path / "test.bin"
        f.write_bytes(data)
        assert _sha256_file(f) == _sha256_bytes(data)


# ---------------------------------------------------------------------------
# BlobStore
# ---------------------------------------------------------------------------


class TestBlobStore:
    def test_write_bytes_is_content_addressed(self, store: BlobStore) -> None:
        desc = store.write_bytes(b"{}", "application/vnd.oci.empty.v1+json")
        assert desc.digest == _sha256_bytes(b"{}")
        assert desc.size == 2
        assert store.path_for(desc.digest).read_bytes() == b"{}"
        assert _staging_leftovers(store) == []

    def test_empty_config_digest(self, store: BlobStore) -> None:
        desc = store.write_bytes(b"{}", "application/vnd.oci.empty.v1+json")
        assert desc.digest == (
            "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a"
        )

    def test_same_content_same_blob(self, store: BlobStore) -> None:
        first = store.write_bytes(b"abc", "text/plain")
        second = store.write_bytes(b"abc", "text/plain")
        assert first.digest == second.digest
        assert len(list(store.blobs_dir.iterdir())) == 1

    def test_staging_file_removed_on_error(self, store: BlobStore) -> None:
        with pytest.raises(RuntimeError):
            with store.staging_file() as staged:
                staged.write_bytes(b"partial")
                raise RuntimeError("boom")
        assert not staged.exists()
        assert _staging_leftovers(store) == []

    def test_path_for_rejects_other_algorithms(self, store: BlobStore) -> None:
        with pytest.raises(ValueError):
            store.path_for("md5:abcdef")

    def test_exists(self, store: BlobStore) -> None:
        desc = store.write_bytes(b"present", "text/plain")
        assert store.exists(desc.digest)
        assert not store.exists("sha256:" + "0" * 64)


# ---------------------------------------------------------------------------
# Pack mode parsing
# ---------------------------------------------------------------------------


class TestPackMode:
    @pytest.mark.parametrize("value", ["raw", "tar", "tar+gzip", "tar+zstd"])
    def test_known_modes(self, value: str) -> None:
        assert parse_pack_mode(value).value == value

    def test_unknown_mode(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown pack mode"):
            parse_pack_mode("zip")

    def test_unknown_mode_rejected_before_writing(self, tmp_path: Path) -> None:
        layout = tmp_path / "layout"
        with pytest.raises(ConfigurationError):
            LayerBuilder(BlobStore(layout), "tar+bzip2")
        assert not layout.exists()


# ---------------------------------------------------------------------------
# LayerBuilder: raw
# ---------------------------------------------------------------------------


class TestRawLayers:
    def test_one_blob_per_file(self, store: BlobStore, full_model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.RAW)
        files = ["model-00001.safetensors", "model-00002.safetensors"]
        descs = builder.build(full_model_dir, Category.WEIGHTS, files)
        assert len(descs) == 2
        for desc, rel in zip(descs, files):
            assert desc.media_type == "application/vnd.cncf.model.weight.v1.raw"
            assert _blob(store, desc) == (full_model_dir / rel).read_bytes()
            assert desc.annotations[ANNOTATION_FILEPATH] == rel
            assert desc.annotations[ANNOTATION_MEDIATYPE_UNTESTED] == "true"

    def test_metadata_is_pinned(self, store: BlobStore, model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.RAW)
        (desc,) = builder.build(model_dir, Category.CONFIG, ["config.json"])
        meta = json.loads(desc.annotations[ANNOTATION_FILE_METADATA])
        assert meta == {
            "name": "config.json",
            "mode": 420,
            "uid": 0,
            "gid": 0,
            "size": (model_dir / "config.json").stat().st_size,
            "mtime": "1970-01-01T00:00:00Z",
            "typeflag": 0,
        }

    def test_empty_list_builds_nothing(self, store: BlobStore, model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.RAW)
        assert builder.build(model_dir, Category.DOCS, []) == []
        assert list(store.blobs_dir.iterdir()) == []

    def test_generic_raw_uses_octet_stream(
        self, store: BlobStore, two_file_dir: Path
    ) -> None:
        builder = LayerBuilder(store, PackMode.RAW, SpecType.GENERIC)
        descs = builder.build(two_file_dir, Category.GENERIC, ["a.txt", "b.bin"])
        assert [d.media_type for d in descs] == ["application/octet-stream"] * 2
        assert [d.annotations for d in descs] == [
            {ANNOTATION_TITLE: "a.txt"},
            {ANNOTATION_TITLE: "b.bin"},
        ]


# ---------------------------------------------------------------------------
# LayerBuilder: archives
# ---------------------------------------------------------------------------


class TestArchiveLayers:
    def test_weights_archived_per_file(
        self, store: BlobStore, full_model_dir: Path
    ) -> None:
        builder = LayerBuilder(store, PackMode.TAR)
        files = ["model-00001.safetensors", "model-00002.safetensors"]
        descs = builder.build(full_model_dir, Category.WEIGHTS, files)
        assert len(descs) == 2
        for desc, rel in zip(descs, files):
            assert desc.media_type == "application/vnd.cncf.model.weight.v1.tar"
            members = _tar_members(_blob(store, desc))
            assert [m.name for m in members] == [rel]
            assert desc.annotations[ANNOTATION_FILEPATH] == rel

    def test_category_archived_together(
        self, store: BlobStore, full_model_dir: Path
    ) -> None:
        builder = LayerBuilder(store, PackMode.TAR)
        files = ["config.json", "notes.dat", "tokenizer.json"]
        (desc,) = builder.build(full_model_dir, Category.CONFIG, files)
        assert desc.media_type == "application/vnd.cncf.model.weight.config.v1.tar"
        assert [m.name for m in _tar_members(_blob(store, desc))] == files
        meta = json.loads(desc.annotations[ANNOTATION_FILE_METADATA])
        assert meta["name"] == "config"
        assert meta["files"] == 3
        assert meta["size"] == sum((full_model_dir / f).stat().st_size for f in files)
        assert desc.annotations[ANNOTATION_FILEPATH] == "config"

    def test_tar_headers_are_normalized(
        self, store: BlobStore, full_model_dir: Path
    ) -> None:
        os.utime(full_model_dir / "scripts" / "convert.py", (1_700_000_000, 1_700_000_000))
        (full_model_dir / "scripts" / "convert.py").chmod(0o755)
        builder = LayerBuilder(store, PackMode.TAR)
        (desc,) = builder.build(full_model_dir, Category.CODE, ["scripts/convert.py"])
        (member,) = _tar_members(_blob(store, desc))
        assert member.name == "scripts/convert.py"
        assert member.mode == 0o644
        assert member.uid == 0 and member.gid == 0
        assert member.uname == "" and member.gname == ""
        assert member.mtime == 0
        assert member.isfile()

    def test_gzip_layer(self, store: BlobStore, full_model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.TAR_GZIP)
        (desc,) = builder.build(full_model_dir, Category.DOCS, ["LICENSE", "README.md"])
        data = _blob(store, desc)
        assert desc.media_type == "application/vnd.cncf.model.doc.v1.tar+gzip"
        assert data[:2] == b"\x1f\x8b"
        assert data[4:8] == b"\x00\x00\x00\x00"
        members = _tar_members(gzip.decompress(data))
        assert [m.name for m in members] == ["LICENSE", "README.md"]
        assert desc.size == len(data)

    def test_zstd_layer(self, store: BlobStore, full_model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.TAR_ZSTD)
        (desc,) = builder.build(full_model_dir, Category.DATASET, ["data/eval.csv"])
        data = _blob(store, desc)
        assert desc.media_type == "application/vnd.cncf.model.dataset.v1.tar+zstd"
        assert data[:4] == b"\x28\xb5\x2f\xfd"
        tar_bytes = zstandard.ZstdDecompressor().decompressobj().decompress(data)
        assert [m.name for m in _tar_members(tar_bytes)] == ["data/eval.csv"]

    def test_generic_gzip_media_type(self, store: BlobStore, two_file_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.TAR_GZIP, SpecType.GENERIC)
        (desc,) = builder.build(two_file_dir, Category.GENERIC, ["a.txt", "b.bin"])
        assert desc.media_type == "application/vnd.oci.image.layer.v1.tar+gzip"
        assert desc.annotations is None

    def test_no_staging_leftovers(self, store: BlobStore, full_model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.TAR_ZSTD)
        builder.build(full_model_dir, Category.CONFIG, ["config.json", "tokenizer.json"])
        assert _staging_leftovers(store) == []

    def test_missing_file_aborts(self, store: BlobStore, model_dir: Path) -> None:
        builder = LayerBuilder(store, PackMode.TAR)
        with pytest.raises(FileNotFoundError):
            builder.build(model_dir, Category.CONFIG, ["config.json", "missing.json"])
        assert list(store.blobs_dir.iterdir()) == []


# ---------------------------------------------------------------------------
# Determinism and overrides
# ---------------------------------------------------------------------------


class TestDeterminism:
    @pytest.mark.parametrize("mode", list(PackMode))
    def test_same_input_same_digests(
        self, tmp_path: Path, full_model_dir: Path, mode: PackMode
    ) -> None:
        files = ["config.json", "notes.dat", "tokenizer.json"]

        def build(layout: str) -> list[str]:
            s = BlobStore(tmp_path / layout)
            s.ensure()
            descs = LayerBuilder(s, mode).build(full_model_dir, Category.CONFIG, files)
            return [d.digest for d in descs]

        first = build("one")
        for rel in files:
            os.utime(full_model_dir / rel, (1_600_000_000, 1_600_000_000))
        assert build("two") == first


class TestMediaTypeOverrides:
    def test_override_applies_in_every_mode(
        self, store: BlobStore, model_dir: Path
    ) -> None:
        overrides = MediaTypeOverrides(weights="application/x-custom-weights")
        for mode in PackMode:
            builder = LayerBuilder(store, mode, media_types=overrides)
            (desc,) = builder.build(model_dir, Category.WEIGHTS, ["model.safetensors"])
            assert desc.media_type == "application/x-custom-weights"

    def test_override_ignored_for_generic(self, store: BlobStore) -> None:
        overrides = MediaTypeOverrides(weights="application/x-custom-weights")
        builder = LayerBuilder(store, PackMode.TAR, SpecType.GENERIC, overrides)
        assert builder.media_type_for(Category.GENERIC) == (
            "application/vnd.oci.image.layer.v1.tar"
        )

    def test_unoverridden_categories_keep_defaults(self, store: BlobStore) -> None:
        builder = LayerBuilder(
            store, PackMode.RAW, media_types=MediaTypeOverrides(docs="text/x-docs")
        )
        assert builder.media_type_for(Category.DOCS) == "text/x-docs"
        assert builder.media_type_for(Category.CODE) == (
            "application/vnd.cncf.model.code.v1.raw"
        )

    def test_for_category(self) -> None:
        overrides = MediaTypeOverrides(weights="application/x-w", docs="application/x-d")
        assert overrides.for_category(Category.WEIGHTS) == "application/x-w"
        assert overrides.for_category(Category.DOCS) == "application/x-d"
        assert overrides.for_category(Category.CONFIG) is None
        assert overrides.for_category(Category.DATASET) is None
