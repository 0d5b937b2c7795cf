"""Archive containers for packaged builds."""

from __future__ import annotations

import tarfile
import zipfile
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path

from buildworker.errors import AssemblyError

ZIP_OSES = frozenset({"windows", "darwin"})


class ArchiveFormat(StrEnum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"


def archive_format_for(os_name: str) -> ArchiveFormat:
    return ArchiveFormat.ZIP if os_name in ZIP_OSES else ArchiveFormat.TAR_GZ


def make_archive(destination: Path, files: Mapping[str, Path], fmt: ArchiveFormat) -> Path:
    """Write ``files`` (archive name -> source path) into ``destination``.

    Directories are added recursively. Returns the archive path, which has the
    format's extension appended.
    """
    archive = destination.with_name(f"{destination.name}.{fmt.value}")
    try:
        if fmt == ArchiveFormat.ZIP:
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as handle:
                for name, source in files.items():
                    _zip_add(handle, source, name)
        else:
            with tarfile.open(archive, "w:gz") as handle:
                for name, source in files.items():
                    handle.add(source, arcname=name)
    except OSError as exc:
        archive.unlink(missing_ok=True)
        raise AssemblyError(
            "Packaging the build failed.",
            context={"archive": str(archive), "error": str(exc)},
        ) from exc
    return archive


def _zip_add(handle: zipfile.ZipFile, source: Path, name: str) -> None:
    if source.is_dir():
        for child in sorted(source.rglob("*")):
            if child.is_file():
                handle.write(child, f"{name}/{child.relative_to(source).as_posix()}")
    else:
        handle.write(source, name)
