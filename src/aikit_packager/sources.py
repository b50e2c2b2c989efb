"""
Source resolvers for aikit-packager.

A resolver turns a source reference into a local directory.  Supported
references::

    /path/to/dir, file:///path/to/dir        local directory
    https://host/path/file                   single file download
    huggingface://org/repo[@rev]             full repository snapshot
    huggingface://org/repo[@rev]/path/file   single repository file
    hf://org/repo                            shallow git clone
"""

from __future__ import annotations

import contextlib
import functools
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence
from urllib.parse import unquote, urlsplit

import requests
from huggingface_hub import hf_hub_download, snapshot_download
from huggingface_hub.errors import (
    HfHubHTTPError,
    HFValidationError,
    LocalEntryNotFoundError,
)
from pydantic import BaseModel, ConfigDict

from .errors import ConfigurationError, ResolutionError

__all__ = [
    "HuggingFaceRef",
    "ResolvedSource",
    "filename_from_url",
    "parse_huggingface_ref",
    "resolve_source",
]

logger = logging.getLogger(__name__)

HUGGINGFACE_BASE_URL = "https://huggingface.co"
DEFAULT_REVISION = "main"

_HTTP_TIMEOUT = (10, 300)
_DOWNLOAD_CHUNK = 1 << 20


class ResolvedSource:
    """
    A local directory produced by a resolver, plus its cleanup.

    ``release()`` removes any temporary directory the resolver created and
    only ever runs the cleanup once.  Use as a context manager so release
    happens on every exit path.
    """

    def __init__(
        self, path: Path, cleanup: Optional[Callable[[], None]] = None
    ) -> None:
        self.path = Path(path)
        self._cleanup = cleanup
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._cleanup is not None:
            logger.debug("Releasing temporary source %s", self.path)
            self._cleanup()

    def __enter__(self) -> ResolvedSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class HuggingFaceRef(BaseModel):
    """A parsed ``huggingface://`` reference."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    repo: str
    revision: str = DEFAULT_REVISION
    sub_path: Optional[str] = None

    @property
    def repo_id(self) -> str:
        return f"{self.namespace}/{self.repo}"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _check_repo_path(value: str, source: str) -> None:
    if not value or " " in value or ".." in value:
        raise ConfigurationError(f"invalid Hugging Face repository in {source!r}")


def parse_huggingface_ref(source: str) -> HuggingFaceRef:
    """
    Parse ``huggingface://namespace/repo[@revision][/path/to/file]``.

    >>> parse_huggingface_ref("huggingface://org/model@v1/weights.gguf").sub_path
    'weights.gguf'
    """
    prefix = "huggingface://"
    if not source.startswith(prefix):
        raise ConfigurationError(f"not a huggingface source: {source!r}")
    parts = source[len(prefix):].strip("/").split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(
            f"huggingface source must look like huggingface://org/repo: {source!r}"
        )
    namespace, repo_part = parts[0], parts[1]
    repo, _, revision = repo_part.partition("@")
    sub_path = "/".join(parts[2:]) or None
    _check_repo_path(f"{namespace}/{repo}", source)
    if sub_path is not None:
        _check_repo_path(sub_path, source)
    return HuggingFaceRef(
        namespace=namespace,
        repo=repo,
        revision=revision or DEFAULT_REVISION,
        sub_path=sub_path,
    )


def filename_from_url(url: str) -> str:
    """Return the decoded last path segment of *url* ("" when there is none)."""
    path = urlsplit(url).path
    return unquote(path.rstrip("/").rsplit("/", 1)[-1]) if path else ""


@contextlib.contextmanager
def _temp_dir(prefix: str) -> Iterator[Path]:
    """A temporary directory that is removed if the body raises."""
    tmp = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield tmp
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise


def _owned(tmp: Path) -> ResolvedSource:
    return ResolvedSource(tmp, cleanup=functools.partial(shutil.rmtree, tmp))


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def resolve_local(
    source: str, hf_token: Optional[str] = None, exclude: Sequence[str] = ()
) -> ResolvedSource:
    """Use a local directory in place; nothing to clean up."""
    raw = source[len("file://"):] if source.startswith("file://") else source
    path = Path(raw).expanduser().resolve()
    if not path.exists():
        raise ResolutionError(f"source directory not found: {str(path)!r}")
    if not path.is_dir():
        raise ResolutionError(f"source must be a directory: {str(path)!r}")
    return ResolvedSource(path)


def resolve_http(
    source: str, hf_token: Optional[str] = None, exclude: Sequence[str] = ()
) -> ResolvedSource:
    """Download a single file over HTTP(S) into a temporary directory."""
    filename = filename_from_url(source)
    if not filename:
        raise ConfigurationError(f"could not determine filename from URL {source!r}")

    with _temp_dir("aikit-src-") as tmp:
        dest = tmp / filename
        logger.info("Downloading %s", source)
        try:
            with requests.get(source, stream=True, timeout=_HTTP_TIMEOUT) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=_DOWNLOAD_CHUNK):
                        fh.write(chunk)
        except requests.RequestException as exc:
            raise ResolutionError(f"download of {source} failed: {exc}") from exc
    return _owned(tmp)


def resolve_huggingface(
    source: str, hf_token: Optional[str] = None, exclude: Sequence[str] = ()
) -> ResolvedSource:
    """
    Fetch a Hugging Face snapshot, or a single file when the reference
    names one, into a temporary directory.
    """
    ref = parse_huggingface_ref(source)
    with _temp_dir("aikit-hf-") as tmp:
        try:
            if ref.sub_path:
                logger.info(
                    "Downloading %s from %s@%s", ref.sub_path, ref.repo_id, ref.revision
                )
                hf_hub_download(
                    repo_id=ref.repo_id,
                    filename=ref.sub_path,
                    revision=ref.revision,
                    local_dir=str(tmp),
                    token=hf_token,
                )
            else:
                logger.info("Downloading snapshot of %s@%s", ref.repo_id, ref.revision)
                snapshot_download(
                    repo_id=ref.repo_id,
                    revision=ref.revision,
                    local_dir=str(tmp),
                    token=hf_token,
                    ignore_patterns=list(exclude) or None,
                )
        except HFValidationError as exc:
            raise ConfigurationError(
                f"invalid Hugging Face repository in {source!r}: {exc}"
            ) from exc
        except (HfHubHTTPError, LocalEntryNotFoundError) as exc:
            raise ResolutionError(
                f"Hugging Face download of {ref.repo_id} failed: {exc}"
            ) from exc
    return _owned(tmp)


def resolve_git(
    source: str, hf_token: Optional[str] = None, exclude: Sequence[str] = ()
) -> ResolvedSource:
    """Shallow-clone ``hf://org/repo`` from huggingface.co with git."""
    repo = source[len("hf://"):].strip("/")
    _check_repo_path(repo, source)
    url = f"{HUGGINGFACE_BASE_URL}/{repo}"

    with _temp_dir("aikit-hf-") as tmp:
        logger.info("Cloning %s", url)
        try:
            subprocess.run(
                ["git", "clone", "--depth", "1", url, str(tmp)],
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ResolutionError("git executable not found") from exc
        except subprocess.CalledProcessError as exc:
            raise ResolutionError(
                f"git clone of {url} failed: {(exc.stderr or '').strip()}"
            ) from exc
    return _owned(tmp)


_Resolver = Callable[[str, Optional[str], Sequence[str]], ResolvedSource]

_RESOLVERS: dict[str, _Resolver] = {
    "": resolve_local,
    "file": resolve_local,
    "http": resolve_http,
    "https": resolve_http,
    "huggingface": resolve_huggingface,
    "hf": resolve_git,
}


def resolve_source(
    source: str,
    *,
    hf_token: Optional[str] = None,
    exclude: Sequence[str] = (),
) -> ResolvedSource:
    """
    Resolve *source* to a local directory.

    Raises ``ConfigurationError`` for unsupported schemes and
    ``ResolutionError`` when fetching fails; temporary directories are
    already removed when either is raised.
    """
    if not source:
        raise ConfigurationError("source is required")
    scheme, sep, _ = source.partition("://")
    resolver = _RESOLVERS.get(scheme.lower() if sep else "")
    if resolver is None:
        raise ConfigurationError(f"unsupported source scheme: {scheme!r}")
    return resolver(source, hf_token, exclude)
