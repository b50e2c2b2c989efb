"""
OCI and ModelPack media types, annotation keys and classification tables.

Single source of truth for the static data the packager works from.
"""

from __future__ import annotations

from .models import Category, PackMode

__all__ = [
    "ANNOTATION_CREATED",
    "ANNOTATION_DESCRIPTION",
    "ANNOTATION_FILEPATH",
    "ANNOTATION_FILE_METADATA",
    "ANNOTATION_MEDIATYPE_UNTESTED",
    "ANNOTATION_REF_NAME",
    "ANNOTATION_TITLE",
    "CATEGORY_BASE_MEDIA_TYPES",
    "CATEGORY_ORDER",
    "GENERIC_ARTIFACT_TYPE",
    "GENERIC_LAYER_MEDIA_TYPES",
    "LARGE_FILE_THRESHOLD",
    "MODELPACK_ARTIFACT_TYPE",
    "MODELPACK_CONFIG",
    "OCI_BLOBS_DIR",
    "OCI_EMPTY_CONFIG",
    "OCI_IMAGE_LAYER",
    "OCI_IMAGE_MANIFEST",
    "OCI_INDEX_FILENAME",
    "OCI_LAYOUT_FILENAME",
    "OCI_LAYOUT_VERSION",
    "OCI_OCTET_STREAM",
    "modelpack_media_type",
]

# OCI image-spec
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_EMPTY_CONFIG = "application/vnd.oci.empty.v1+json"
OCI_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_OCTET_STREAM = "application/octet-stream"

OCI_LAYOUT_FILENAME = "oci-layout"
OCI_INDEX_FILENAME = "index.json"
OCI_BLOBS_DIR = "blobs/sha256"
OCI_LAYOUT_VERSION = "1.0.0"

# ModelPack (CNCF model-spec)
MODELPACK_ARTIFACT_TYPE = "application/vnd.cncf.model.manifest.v1+json"
MODELPACK_CONFIG = "application/vnd.cncf.model.config.v1+json"

GENERIC_ARTIFACT_TYPE = "application/vnd.unknown.artifact.v1"

# Annotation keys
ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"
ANNOTATION_CREATED = "org.opencontainers.image.created"
ANNOTATION_DESCRIPTION = "org.opencontainers.image.description"
ANNOTATION_FILEPATH = "org.cncf.model.filepath"
ANNOTATION_FILE_METADATA = "org.cncf.model.file.metadata+json"
ANNOTATION_MEDIATYPE_UNTESTED = "org.cncf.model.file.mediatype.untested"

_MODE_SUFFIX: dict[PackMode, str] = {
    PackMode.RAW: ".raw",
    PackMode.TAR: ".tar",
    PackMode.TAR_GZIP: ".tar+gzip",
    PackMode.TAR_ZSTD: ".tar+zstd",
}

CATEGORY_BASE_MEDIA_TYPES: dict[Category, str] = {
    Category.WEIGHTS: "application/vnd.cncf.model.weight.v1",
    Category.CONFIG: "application/vnd.cncf.model.weight.config.v1",
    Category.DOCS: "application/vnd.cncf.model.doc.v1",
    Category.CODE: "application/vnd.cncf.model.code.v1",
    Category.DATASET: "application/vnd.cncf.model.dataset.v1",
}

GENERIC_LAYER_MEDIA_TYPES: dict[PackMode, str] = {
    PackMode.RAW: OCI_OCTET_STREAM,
    PackMode.TAR: OCI_IMAGE_LAYER,
    PackMode.TAR_GZIP: OCI_IMAGE_LAYER + "+gzip",
    PackMode.TAR_ZSTD: OCI_IMAGE_LAYER + "+zstd",
}

# Emission order of modelpack layers.
CATEGORY_ORDER: tuple[Category, ...] = (
    Category.WEIGHTS,
    Category.CONFIG,
    Category.DOCS,
    Category.CODE,
    Category.DATASET,
)

# ---------------------------------------------------------------------------
# Classification rules, evaluated top to bottom on the lower-cased base name
# ---------------------------------------------------------------------------

WEIGHT_EXTENSIONS = (".safetensors", ".bin", ".gguf", ".pt", ".ckpt")
DOC_PREFIXES = ("readme", "license")
DOC_EXTENSIONS = (".md",)
CONFIG_NAMES = ("config.json", "tokenizer.json", "generation_config.json")
CONFIG_PATTERNS = ("*tokenizer*.json",)
CONFIG_EXTENSIONS = (".json", ".txt")
CODE_EXTENSIONS = (".py", ".sh", ".ipynb", ".go", ".js", ".ts")
DATASET_EXTENSIONS = (".csv", ".tsv", ".jsonl", ".parquet", ".arrow", ".h5", ".npz")

# Unmatched files at or above this size are assumed to be weights.
LARGE_FILE_THRESHOLD = 10 * 1024 * 1024

# Never packaged.
EXCLUDED_SUFFIXES = (".lock",)
EXCLUDED_TOP_LEVEL_DIRS = (".cache", ".git")


def modelpack_media_type(category: Category, mode: PackMode) -> str:
    """Return the default ModelPack media type for *category* under *mode*."""
    return CATEGORY_BASE_MEDIA_TYPES[category] + _MODE_SUFFIX[mode]
