"""MaterialFlow archive expansion — zip uploads into individual files."""

from __future__ import annotations

import io
import mimetypes
import posixpath
import zipfile
import zlib
from typing import Protocol

import structlog
from pydantic import BaseModel

from materialflow.core.exceptions import InputError
from materialflow.modules.extraction.schemas import FileType

logger = structlog.get_logger()


class ArchiveMember(BaseModel):
    name: str
    path: str  # relative path inside the archive, unique per member
    data: bytes
    mime_type: str


class ArchiveExpander(Protocol):
    def expand(self, zip_bytes: bytes) -> list[ArchiveMember]: ...


def guess_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def file_type_for(file_name: str, mime_type: str | None = None) -> FileType:
    mime_type = mime_type or guess_mime_type(file_name)
    if mime_type == "application/pdf":
        return "pdf"
    if mime_type in ("application/zip", "application/x-zip-compressed"):
        return "zip"
    return "other"


class ZipArchiveExpander:
    """Reads every regular file of a zip; skips folders, __MACOSX and dotfiles."""

    def expand(self, zip_bytes: bytes) -> list[ArchiveMember]:
        try:
            archive = zipfile.ZipFile(io.BytesIO(zip_bytes))
        except zipfile.BadZipFile as e:
            raise InputError(f"Invalid zip archive: {e}") from e

        members: list[ArchiveMember] = []
        with archive:
            for info in archive.infolist():
                path = info.filename
                if info.is_dir() or path.startswith("__MACOSX/"):
                    continue
                if path.startswith(".") or "/." in path:
                    continue

                name = posixpath.basename(path)
                try:
                    data = archive.read(info)
                except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError, EOFError, zlib.error) as e:
                    raise InputError(f"Unreadable zip member {path}: {e}") from e
                members.append(
                    ArchiveMember(
                        name=name,
                        path=path,
                        data=data,
                        mime_type=guess_mime_type(name),
                    )
                )

        logger.info("Zip expanded", files=len(members))
        return members
