"""CLI entry point for aikit-packager."""

from __future__ import annotations

import logging
import sys
from typing import Optional

import click

from .core import UNPACK_ERRORS, LayoutReader, Packager
from .errors import PackagerError
from .mediatypes import (
    ANNOTATION_FILEPATH,
    ANNOTATION_REF_NAME,
    ANNOTATION_TITLE,
)
from .models import MediaTypeOverrides, PackMode, SpecType

# Failures reading back a damaged or foreign layout.
_LAYOUT_ERRORS = (OSError, ValueError) + UNPACK_ERRORS


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _report_verification(reader: LayoutReader) -> bool:
    verification = reader.verify()
    click.echo(f"\nBlob verification ({len(verification)} blobs):")
    all_valid = True
    for digest, valid in verification:
        status = "OK" if valid else "FAIL"
        if not valid:
            all_valid = False
        click.echo(f"  {status}  {digest[:30]}...")
    if all_valid:
        click.echo("All blobs verified.")
    else:
        click.echo("WARNING: some blobs failed verification!", err=True)
    return all_valid


@click.group()
@click.version_option(package_name="aikit-packager")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """AIKit packager: source trees to OCI image layouts."""
    _configure_logging(verbose)


@main.command("pack")
@click.option(
    "--source",
    required=True,
    help="Local directory, http(s):// URL, huggingface://org/repo[@rev][/file] or hf://org/repo.",
)
@click.option(
    "--output",
    "output_dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory to write the OCI layout into.",
)
@click.option(
    "--mode",
    "pack_mode",
    type=click.Choice([m.value for m in PackMode]),
    default=PackMode.RAW.value,
    show_default=True,
    help="Layer packaging mode.",
)
@click.option(
    "--spec",
    type=click.Choice([s.value for s in SpecType]),
    default=SpecType.MODELPACK.value,
    show_default=True,
    help="Target artifact spec.",
)
@click.option("--name", default=None, help="Human-readable artifact name.")
@click.option("--ref-name", default=None, help="Reference name for index.json.")
@click.option("--artifact-type", default=None, help="Override the manifest artifactType.")
@click.option(
    "--manifest-config-media-type", default=None, help="Override the config media type."
)
@click.option("--weights-media-type", default=None, help="Override the weights layer media type.")
@click.option("--config-media-type", default=None, help="Override the config layer media type.")
@click.option("--docs-media-type", default=None, help="Override the docs layer media type.")
@click.option(
    "--exclude",
    multiple=True,
    help="Glob of relative paths to leave out (repeatable).",
)
@click.option(
    "--hf-token",
    envvar="HF_TOKEN",
    default=None,
    help="Hugging Face access token.",
)
def pack_command(
    source: str,
    output_dir: str,
    pack_mode: str,
    spec: str,
    name: Optional[str],
    ref_name: Optional[str],
    artifact_type: Optional[str],
    manifest_config_media_type: Optional[str],
    weights_media_type: Optional[str],
    config_media_type: Optional[str],
    docs_media_type: Optional[str],
    exclude: tuple[str, ...],
    hf_token: Optional[str],
) -> None:
    """Package a source tree into an OCI image layout."""
    options = {
        "source": source,
        "output_dir": output_dir,
        "pack_mode": pack_mode,
        "spec": spec,
        "name": name,
        "ref_name": ref_name,
        "artifact_type": artifact_type,
        "media_types": MediaTypeOverrides(
            manifest_config=manifest_config_media_type,
            weights=weights_media_type,
            config=config_media_type,
            docs=docs_media_type,
        ),
        "exclude": list(exclude),
        "hf_token": hf_token,
    }
    packager = Packager()
    try:
        result = packager.pack(options)
    except (PackagerError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Packed layout: {result.layout_path}")
    click.echo(f"  Spec      : {spec}")
    click.echo(f"  Mode      : {pack_mode}")
    click.echo(f"  Layers    : {len(result.layers)}")
    click.echo(f"  Manifest  : {result.manifest.digest}")


@main.command("inspect")
@click.option(
    "--layout",
    "layout_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Path to the OCI layout directory.",
)
def inspect_command(layout_dir: str) -> None:
    """Inspect an OCI layout without unpacking it."""
    reader = LayoutReader(layout_dir)
    try:
        entry = reader.manifest_descriptor()
        annotations = entry.annotations or {}
        click.echo(f"Title    : {annotations.get(ANNOTATION_TITLE, '(none)')}")
        click.echo(f"Ref name : {annotations.get(ANNOTATION_REF_NAME, '(none)')}")
        click.echo(f"Manifest : {entry.digest}")

        manifest = reader.read_manifest()
        click.echo(f"Artifact : {manifest.artifact_type or '(none)'}")
        click.echo(f"Config   : {manifest.config.media_type}")
        click.echo(f"\nLayers ({len(manifest.layers)}):")
        for layer in manifest.layers:
            layer_annotations = layer.annotations or {}
            title = layer_annotations.get(ANNOTATION_FILEPATH) or layer_annotations.get(
                ANNOTATION_TITLE, "(unnamed)"
            )
            size_kb = layer.size / 1024
            click.echo(
                f"  {title:<40}  {size_kb:8.1f} KB  {layer.media_type}  "
                f"{layer.digest[:23]}..."
            )

        if not _report_verification(reader):
            sys.exit(1)
    except _LAYOUT_ERRORS as exc:
        click.echo(f"Error inspecting layout: {exc}", err=True)
        sys.exit(1)


@main.command("verify")
@click.option(
    "--layout",
    "layout_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Path to the OCI layout directory.",
)
def verify_command(layout_dir: str) -> None:
    """Check every referenced blob against its digest."""
    reader = LayoutReader(layout_dir)
    try:
        ok = _report_verification(reader)
    except _LAYOUT_ERRORS as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if not ok:
        sys.exit(1)


@main.command("unpack")
@click.option(
    "--layout",
    "layout_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Path to the OCI layout directory.",
)
@click.option(
    "--output",
    "output_dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory to unpack into.",
)
def unpack_command(layout_dir: str, output_dir: str) -> None:
    """Restore the packaged files from an OCI layout."""
    reader = LayoutReader(layout_dir)
    try:
        files = reader.unpack(output_dir)
    except _LAYOUT_ERRORS as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Unpacked to: {output_dir}")
    click.echo(f"  Files : {len(files)}")


if __name__ == "__main__":
    main()
