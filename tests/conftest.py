"""Shared test fixtures for aikit-packager."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from aikit_packager.core import LayoutReader, Packager
from aikit_packager.layers import BlobStore
from aikit_packager.models import OCIIndex, OCIManifest, PackOptions


# ---------------------------------------------------------------------------
# Source trees
# ---------------------------------------------------------------------------


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    """One weights, one config and one docs file."""
    d = tmp_path / "model"
    d.mkdir()
    (d / "model.safetensors").write_bytes(b"\x00\x01\x02\x03" * 256)
    (d / "config.json").write_text('{"hidden_size": 768}', encoding="utf-8")
    (d / "README.md").write_text("# Test model\n", encoding="utf-8")
    return d


@pytest.fixture()
def full_model_dir(tmp_path: Path) -> Path:
    """A tree touching every modelpack category plus files that are skipped."""
    d = tmp_path / "full"
    d.mkdir()
    (d / "model-00001.safetensors").write_bytes(b"\x01" * 2048)
    (d / "model-00002.safetensors").write_bytes(b"\x02" * 2048)
    (d / "config.json").write_text('{"layers": 12}', encoding="utf-8")
    (d / "tokenizer.json").write_text('{"vocab_size": 32000}', encoding="utf-8")
    (d / "LICENSE").write_text("Apache-2.0\n", encoding="utf-8")
    (d / "README.md").write_text("# Full model\n", encoding="utf-8")
    scripts = d / "scripts"
    scripts.mkdir()
    (scripts / "convert.py").write_text("print('convert')\n", encoding="utf-8")
    data = d / "data"
    data.mkdir()
    (data / "eval.csv").write_text("a,b\n1,2\n", encoding="utf-8")
    (d / "notes.dat").write_bytes(b"small unknown file")
    # Never packaged
    (d / "model.lock").write_text("locked", encoding="utf-8")
    cache = d / ".cache"
    cache.mkdir()
    (cache / "download.json").write_text("{}", encoding="utf-8")
    return d


@pytest.fixture()
def two_file_dir(tmp_path: Path) -> Path:
    d = tmp_path / "generic"
    d.mkdir()
    (d / "a.txt").write_text("alpha\n", encoding="utf-8")
    (d / "b.bin").write_bytes(b"\xDE\xAD\xBE\xEF" * 64)
    return d


# ---------------------------------------------------------------------------
# Core objects
# ---------------------------------------------------------------------------


@pytest.fixture()
def packager() -> Packager:
    return Packager()


@pytest.fixture()
def store(tmp_path: Path) -> BlobStore:
    s = BlobStore(tmp_path / "layout")
    s.ensure()
    return s


@pytest.fixture()
def make_options(tmp_path: Path):
    """Build ``PackOptions`` with a default output directory under tmp_path."""

    def _make(source: Path, output: str = "layout", **kwargs: Any) -> PackOptions:
        return PackOptions(
            source=str(source), output_dir=str(tmp_path / output), **kwargs
        )

    return _make


@pytest.fixture()
def packed_layout(packager: Packager, model_dir: Path, make_options) -> Path:
    """Return the path to a raw modelpack layout of ``model_dir``."""
    result = packager.pack(make_options(model_dir))
    return Path(result.layout_path)


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def load_index(layout: Path) -> OCIIndex:
    return OCIIndex.model_validate(json.loads((layout / "index.json").read_text()))


def load_manifest(layout: Path) -> OCIManifest:
    return LayoutReader(layout).read_manifest()


def blob_path(layout: Path, digest: str) -> Path:
    return layout / "blobs" / "sha256" / digest.split(":", 1)[1]
