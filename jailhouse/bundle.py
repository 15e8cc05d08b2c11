"""Image bundle: the build context for the sandbox image.

Collects files into an in-memory tar archive together with a Dockerfile,
and names the image after a digest of everything in it. Identical contents
give the same reference, so an existing image can be reused instead of
rebuilt::

    bundle = default_bundle(inmate_dir="inmates", inmate="inmates.render:Render")
    bundle.image_name   # "jailhouse:3f786850e387550fdab836ed7e6dc881de23001b"
"""

from __future__ import annotations

import glob
import hashlib
import io
import os
import tarfile
from dataclasses import dataclass
from pathlib import Path

from jailhouse.core.exceptions import ImageBuildError


PACKAGE_DIR = Path(__file__).resolve().parent
DOCKERFILE_TEMPLATE = PACKAGE_DIR / "Dockerfile.template"

# Never bundled: interpreter caches would make the digest unstable.
_SKIPPED_DIRS = frozenset({"__pycache__", ".git", ".pytest_cache", ".mypy_cache"})
_SKIPPED_SUFFIXES = (".pyc", ".pyo")


@dataclass(frozen=True)
class _Include:
    pattern: str
    prefix: str | None
    ignore_hidden: bool


class ImageBundle:
    """Build context for a sandbox image.

    Args:
        base_name: Repository part of the generated image reference.
        dockerfile: Custom Dockerfile; the packaged template is used otherwise.
        python_version: Substituted for ``{{python_version}}`` in the template.
        inmate: ``module:attribute`` path substituted for ``{{inmate}}``.
    """

    def __init__(
        self,
        base_name: str = "jailhouse",
        *,
        dockerfile: Path | str | None = None,
        python_version: str = "3.12",
        inmate: str = "",
    ) -> None:
        self.base_name = base_name
        self.dockerfile = Path(dockerfile) if dockerfile else None
        self.python_version = python_version
        self.inmate = inmate
        self._includes: list[_Include] = []
        self._excludes: list[str] = []
        self._files: dict[str, bytes] | None = None
        self._tarball: bytes | None = None

    def add(self, pattern: str, *, prefix: str | None = None, ignore_hidden: bool = False) -> ImageBundle:
        """Include files matching ``pattern`` in the bundle.

        Matched directories are copied recursively under their own name.

            add("root/*")                      # contents of root/ at the top
            add("root/*", ignore_hidden=True)  # ... minus dotfiles
            add("lib/*", prefix="vendor/lib")  # contents of lib/ under vendor/lib
            add("lib", prefix="vendor")        # lib/ itself under vendor/
        """
        self._includes.append(_Include(pattern, prefix, ignore_hidden))
        self._invalidate()
        return self

    def exclude(self, path: str) -> ImageBundle:
        """Drop the file at ``path`` (relative to the bundle root)."""
        self._excludes.append(path.strip("/"))
        self._invalidate()
        return self

    @property
    def files(self) -> dict[str, bytes]:
        """Bundle contents: archive path -> bytes, Dockerfile included."""
        if self._files is None:
            self._files = self._collect()
        return self._files

    @property
    def digest(self) -> str:
        """SHA-1 over every bundled path and its contents, in path order."""
        sha = hashlib.sha1()
        for name in sorted(self.files):
            sha.update(name.encode())
            sha.update(b"\0")
            sha.update(self.files[name])
            sha.update(b"\0")
        return sha.hexdigest()

    @property
    def image_name(self) -> str:
        """Content-addressed image reference, ``<base_name>:<digest>``."""
        return f"{self.base_name}:{self.digest}"

    @property
    def tarball(self) -> bytes:
        """The bundle as an uncompressed tar archive (the build context)."""
        if self._tarball is None:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w") as archive:
                for name in sorted(self.files):
                    content = self.files[name]
                    info = tarfile.TarInfo(name)
                    info.size = len(content)
                    info.mode = 0o644
                    info.mtime = 0
                    archive.addfile(info, io.BytesIO(content))
            self._tarball = buffer.getvalue()
        return self._tarball

    def _invalidate(self) -> None:
        self._files = None
        self._tarball = None

    def _collect(self) -> dict[str, bytes]:
        files: dict[str, bytes] = {}
        for include in self._includes:
            matches = sorted(glob.glob(include.pattern, include_hidden=not include.ignore_hidden))
            if include.ignore_hidden:
                matches = [m for m in matches if not os.path.basename(m).startswith(".")]
            for match in matches:
                for arcname, path in _walk(Path(match), include.prefix, include.ignore_hidden):
                    files[arcname] = path.read_bytes()

        for path in self._excludes:
            files.pop(path, None)

        files["Dockerfile"] = self._render_dockerfile()
        return files

    def _render_dockerfile(self) -> bytes:
        if self.dockerfile is not None:
            try:
                return self.dockerfile.read_bytes()
            except OSError as exc:
                raise ImageBuildError(f"Cannot read Dockerfile {self.dockerfile}: {exc}") from exc
        content = DOCKERFILE_TEMPLATE.read_text()
        content = content.replace("{{python_version}}", self.python_version)
        content = content.replace("{{inmate}}", self.inmate)
        return content.encode()


def _walk(path: Path, prefix: str | None, ignore_hidden: bool = False) -> list[tuple[str, Path]]:
    base = f"{prefix.strip('/')}/" if prefix else ""
    if path.is_file():
        return [] if path.name.endswith(_SKIPPED_SUFFIXES) else [(f"{base}{path.name}", path)]
    entries: list[tuple[str, Path]] = []
    for root, dirs, names in os.walk(path):
        dirs[:] = sorted(
            d for d in dirs
            if d not in _SKIPPED_DIRS and not (ignore_hidden and d.startswith("."))
        )
        for name in sorted(names):
            if name.endswith(_SKIPPED_SUFFIXES) or (ignore_hidden and name.startswith(".")):
                continue
            file_path = Path(root) / name
            relative = file_path.relative_to(path.parent).as_posix()
            entries.append((f"{base}{relative}", file_path))
    return entries


def default_bundle(
    inmate_dir: Path | str,
    inmate: str,
    *,
    base_name: str = "jailhouse",
    python_version: str = "3.12",
    dockerfile: Path | str | None = None,
) -> ImageBundle:
    """Bundle the jailhouse package and an inmate directory.

    The package lands in ``jailhouse/`` and the inmate directory's contents
    in ``inmate/``; the packaged Dockerfile puts both on ``PYTHONPATH``.
    """
    bundle = ImageBundle(
        base_name, dockerfile=dockerfile, python_version=python_version, inmate=inmate,
    )
    bundle.add(str(PACKAGE_DIR))
    bundle.add(os.path.join(str(inmate_dir), "*"), prefix="inmate", ignore_hidden=True)
    return bundle
