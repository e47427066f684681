"""Attachment resolution for job recipients."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List

from ..config import StorageConfig
from ..errors import NoAttachmentsError
from ..logger import get_logger
from ..models import Recipient
from .base import AttachmentFetcherBase
from .filesystem_fetcher import FilesystemAttachmentFetcher
from .s3_fetcher import S3AttachmentFetcher


@dataclass
class ResolvedAttachment:
    """A fetched document together with the party it belongs to."""

    cuit: str
    owner_name: str
    content: bytes
    mimetype: str = "application/pdf"

    @property
    def filename(self) -> str:
        return f"{self.owner_name} [{self.cuit}].pdf"

    @property
    def size(self) -> int:
        return len(self.content)


class AttachmentResolver:
    """Collect one document per unique tax id for a recipient.

    The primary recipient's document comes first, linked recipients follow
    in their stored order. Missing documents are logged and skipped; only an
    empty result is an error.
    """

    def __init__(
        self,
        fetcher: AttachmentFetcherBase,
        *,
        default_folder: str = "veps_default",
        fetch_timeout: float = 30.0,
        logger=None,
    ):
        self._fetcher = fetcher
        self._default_folder = default_folder
        self._fetch_timeout = fetch_timeout
        self.logger = logger or get_logger()

    async def resolve(self, recipient: Recipient, folder: str | None) -> List[ResolvedAttachment]:
        folder = folder or self._default_folder
        attachments: List[ResolvedAttachment] = []
        attempted: List[str] = []
        seen: set[str] = set()

        if recipient.cuit:
            attempted.append(recipient.cuit)
            seen.add(recipient.cuit)
            content = await self._try_fetch(recipient.cuit, folder)
            if content is not None:
                attachments.append(ResolvedAttachment(recipient.cuit, recipient.real_name, content))
        else:
            self.logger.warning("Recipient %s has no CUIT, skipping primary document", recipient.real_name)

        for linked in recipient.joined_users:
            if not linked.cuit:
                continue
            if linked.cuit in seen:
                self.logger.debug("Skipping linked CUIT %s, already included", linked.cuit)
                continue
            attempted.append(linked.cuit)
            seen.add(linked.cuit)
            content = await self._try_fetch(linked.cuit, folder)
            if content is not None:
                attachments.append(ResolvedAttachment(linked.cuit, linked.name, content))

        if not attachments:
            raise NoAttachmentsError(recipient.real_name, attempted)
        return attachments

    async def _try_fetch(self, cuit: str, folder: str) -> bytes | None:
        try:
            return await asyncio.wait_for(self._fetcher.fetch(cuit, folder), timeout=self._fetch_timeout)
        except Exception as exc:
            self.logger.warning("No document for CUIT %s in folder %s: %s", cuit, folder, exc)
            return None


def build_fetcher(config: StorageConfig) -> AttachmentFetcherBase:
    """Create the fetcher selected by ``config.backend``."""
    if config.backend == "filesystem":
        return FilesystemAttachmentFetcher(config.base_dir or "")
    if config.backend == "s3":
        return S3AttachmentFetcher(
            config.bucket,
            endpoint_url=config.endpoint_url,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
        )
    raise ValueError(f"Unknown storage backend '{config.backend}'")


__all__ = [
    "AttachmentFetcherBase",
    "AttachmentResolver",
    "FilesystemAttachmentFetcher",
    "ResolvedAttachment",
    "S3AttachmentFetcher",
    "build_fetcher",
]
