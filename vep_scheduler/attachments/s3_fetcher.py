"""Fetch VEP documents from an S3 compatible bucket (DigitalOcean Spaces)."""

from __future__ import annotations

from typing import Optional

import aioboto3

from ..errors import AttachmentNotFoundError
from .base import AttachmentFetcherBase


class S3AttachmentFetcher(AttachmentFetcherBase):
    """Locate ``<folder>/<NAME> [<CUIT>].pdf`` objects and download them."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        session=None,
    ):
        self.bucket = bucket
        self._endpoint_url = endpoint_url
        self._session = session or aioboto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    async def fetch(self, cuit: str, folder: str) -> bytes:
        prefix = f"{folder.rstrip('/')}/"
        async with self._session.client("s3", endpoint_url=self._endpoint_url) as s3:
            key = await self._find_key(s3, prefix, cuit)
            if key is None:
                raise AttachmentNotFoundError(cuit, folder)
            resp = await s3.get_object(Bucket=self.bucket, Key=key)
            return await resp["Body"].read()

    async def _find_key(self, s3, prefix: str, cuit: str) -> Optional[str]:
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                key = item["Key"]
                if self.matches(key.rsplit("/", 1)[-1], cuit):
                    return key
        return None
