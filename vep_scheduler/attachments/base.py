"""Base protocol for attachment fetchers."""


class AttachmentFetcherBase:
    """Interface implemented by concrete attachment fetchers."""

    async def fetch(self, cuit: str, folder: str) -> bytes:
        """Return the document stored for ``cuit`` in ``folder``.

        Raises :class:`~vep_scheduler.errors.AttachmentNotFoundError` when
        storage holds no matching document.
        """
        raise NotImplementedError

    @staticmethod
    def matches(filename: str, cuit: str) -> bool:
        """Return ``True`` for PDF names carrying the tax id (``NAME [CUIT].pdf``)."""
        return filename.lower().endswith(".pdf") and f"[{cuit}]" in filename
