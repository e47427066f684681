"""Filesystem attachment fetcher.

Looks up documents stored as ``<base_dir>/<folder>/<NAME> [<CUIT>].pdf``.
Folder names resolving outside ``base_dir`` are rejected.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from ..errors import AttachmentNotFoundError
from .base import AttachmentFetcherBase


class FilesystemAttachmentFetcher(AttachmentFetcherBase):
    """Fetch VEP documents from a local directory tree."""

    def __init__(self, base_dir: str):
        if not base_dir:
            raise ValueError("base_dir is required for the filesystem backend")
        self._base_dir = Path(base_dir).resolve()

    async def fetch(self, cuit: str, folder: str) -> bytes:
        folder_path = self._resolve_folder(folder)
        return await asyncio.to_thread(self._read_match, folder_path, cuit, folder)

    def _resolve_folder(self, folder: str) -> Path:
        resolved = (self._base_dir / folder).resolve()
        try:
            resolved.relative_to(self._base_dir)
        except ValueError:
            raise ValueError(
                f"Path traversal detected: '{folder}' resolves outside base directory"
            ) from None
        return resolved

    def _read_match(self, folder_path: Path, cuit: str, folder: str) -> bytes:
        if folder_path.is_dir():
            for candidate in sorted(folder_path.iterdir()):
                if candidate.is_file() and self.matches(candidate.name, cuit):
                    return candidate.read_bytes()
        raise AttachmentNotFoundError(cuit, folder)

    @property
    def base_dir(self) -> Path:
        """The configured base directory."""
        return self._base_dir
