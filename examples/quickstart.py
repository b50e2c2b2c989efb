"""
aikit-packager quickstart: pack, inspect, verify and unpack a toy model.

Run directly:

    python examples/quickstart.py

All demos use a temporary directory and clean up after themselves.
"""

from __future__ import annotations

import json
import pathlib
import tempfile


def _make_model(root: pathlib.Path) -> pathlib.Path:
    model_dir = root / "my-classifier"
    model_dir.mkdir()
    (model_dir / "model.safetensors").write_bytes(b"\x00" * 2048)
    (model_dir / "config.json").write_text(
        json.dumps({"hidden_size": 768, "num_labels": 3}), encoding="utf-8"
    )
    (model_dir / "tokenizer.json").write_text(
        json.dumps({"vocab_size": 30522}), encoding="utf-8"
    )
    (model_dir / "README.md").write_text("# my-classifier\n", encoding="utf-8")
    return model_dir


# ---------------------------------------------------------------------------
# Demo 1: Classify and pack a model directory
# ---------------------------------------------------------------------------

def demo_pack(root: pathlib.Path, mode: str) -> pathlib.Path:
    """Pack a toy model directory into an OCI layout using *mode*."""
    print(f"\n=== Demo 1: Pack a model directory ({mode}) ===")

    from aikit_packager.classify import classify_tree
    from aikit_packager.core import Packager
    from aikit_packager.models import PackOptions

    model_dir = _make_model(root)
    for category, files in classify_tree(model_dir).items():
        if files:
            print(f"  {category.value:<8}: {files}")

    options = PackOptions(
        source=str(model_dir),
        output_dir=str(root / f"layout-{mode.replace('+', '-')}"),
        pack_mode=mode,
        name="my-classifier",
    )
    result = Packager().pack(options)
    print(f"\n  Layout    : {result.layout_path}")
    print(f"  Manifest  : {result.manifest.digest}")
    for layer in result.layers:
        print(f"  Layer     : {layer.media_type} ({layer.size:,} bytes)")
    return pathlib.Path(result.layout_path)


# ---------------------------------------------------------------------------
# Demo 2: Inspect and verify a layout
# ---------------------------------------------------------------------------

def demo_verify(layout: pathlib.Path) -> None:
    print("\n=== Demo 2: Inspect and verify ===")

    from aikit_packager.core import LayoutReader

    reader = LayoutReader(layout)
    entry = reader.manifest_descriptor()
    print(f"  Annotations : {json.dumps(entry.annotations, indent=2)}")
    for digest, ok in reader.verify():
        print(f"  {'OK  ' if ok else 'FAIL'} {digest[:30]}...")


# ---------------------------------------------------------------------------
# Demo 3: Unpack a layout
# ---------------------------------------------------------------------------

def demo_unpack(layout: pathlib.Path, root: pathlib.Path) -> None:
    print("\n=== Demo 3: Unpack ===")

    from aikit_packager.core import LayoutReader

    out = root / "restored"
    files = LayoutReader(layout).unpack(out)
    print(f"  Restored {len(files)} file(s) into {out}: {sorted(files)}")


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        root = pathlib.Path(tmp)
        layout = demo_pack(root, "tar+gzip")
        demo_verify(layout)
        demo_unpack(layout, root)
    print("\nDone.")


if __name__ == "__main__":
    main()
