"""Pydantic models for aikit-packager."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

__all__ = [
    "Category",
    "Descriptor",
    "MediaTypeOverrides",
    "OCIIndex",
    "OCIManifest",
    "PackMode",
    "PackOptions",
    "PackResult",
    "SpecType",
]

_DIGEST_PATTERN = r"^sha256:[a-f0-9]{64}$"


class Category(str, Enum):
    """Semantic bucket a source file is packaged into."""

    WEIGHTS = "weights"
    CONFIG = "config"
    DOCS = "docs"
    CODE = "code"
    DATASET = "dataset"
    GENERIC = "generic"


class PackMode(str, Enum):
    """How the files of a category are grouped into blobs."""

    RAW = "raw"
    TAR = "tar"
    TAR_GZIP = "tar+gzip"
    TAR_ZSTD = "tar+zstd"


class SpecType(str, Enum):
    """Target artifact spec."""

    MODELPACK = "modelpack"
    GENERIC = "generic"


class Descriptor(BaseModel):
    """
    OCI content descriptor.

    https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    digest: str = Field(pattern=_DIGEST_PATTERN)
    size: int = Field(ge=0)
    annotations: Optional[dict[str, str]] = None
    artifact_type: Optional[str] = Field(default=None, alias="artifactType")

    @property
    def hex(self) -> str:
        """The digest without its ``sha256:`` algorithm prefix."""
        return self.digest.split(":", 1)[1]


class OCIManifest(BaseModel):
    """
    OCI Image Manifest (schema version 2).

    Follows the OCI Image Manifest Specification
    https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(
        default="application/vnd.oci.image.manifest.v1+json", alias="mediaType"
    )
    artifact_type: Optional[str] = Field(default=None, alias="artifactType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: Optional[dict[str, str]] = None


class OCIIndex(BaseModel):
    """
    OCI Image Index written as ``index.json`` at the layout root.

    https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(
        default="application/vnd.oci.image.index.v1+json", alias="mediaType"
    )
    manifests: list[Descriptor] = Field(default_factory=list)


class MediaTypeOverrides(BaseModel):
    """Optional replacements for the default ModelPack media types."""

    manifest_config: Optional[str] = None
    weights: Optional[str] = None
    config: Optional[str] = None
    docs: Optional[str] = None

    def for_category(self, category: Category) -> Optional[str]:
        """The override for *category*, or ``None`` to keep the default."""
        return {
            Category.WEIGHTS: self.weights,
            Category.CONFIG: self.config,
            Category.DOCS: self.docs,
        }.get(category)


class PackOptions(BaseModel):
    """Everything a single packaging run needs to know."""

    source: str
    output_dir: str
    pack_mode: PackMode = PackMode.RAW
    spec: SpecType = SpecType.MODELPACK
    name: Optional[str] = None
    ref_name: Optional[str] = None
    artifact_type: Optional[str] = None
    media_types: MediaTypeOverrides = Field(default_factory=MediaTypeOverrides)
    exclude: list[str] = Field(default_factory=list)
    hf_token: Optional[str] = Field(default=None, repr=False)

    @field_validator("source", "output_dir")
    @classmethod
    def _require_non_empty(cls, value: str, info: ValidationInfo) -> str:
        if not value.strip():
            label = "source" if info.field_name == "source" else "output directory"
            raise ValueError(f"{label} is required")
        return value


class PackResult(BaseModel):
    """What a packaging run produced."""

    layout_path: str
    manifest: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
