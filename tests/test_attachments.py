import asyncio
import types

import pytest

from vep_scheduler.attachments import (
    AttachmentResolver,
    FilesystemAttachmentFetcher,
    S3AttachmentFetcher,
    build_fetcher,
)
from vep_scheduler.config import StorageConfig
from vep_scheduler.errors import AttachmentNotFoundError, NoAttachmentsError
from vep_scheduler.models import Recipient


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
    )


class DummyFetcher:
    def __init__(self, documents):
        self.documents = documents
        self.calls = []

    async def fetch(self, cuit, folder):
        self.calls.append((cuit, folder))
        if cuit not in self.documents:
            raise AttachmentNotFoundError(cuit, folder)
        return self.documents[cuit]


def make_recipient(**overrides):
    data = {
        "id": 1,
        "real_name": "ANA PEREZ",
        "mobile_number": "5491100000001",
        "cuit": "20111111112",
        "joined_users": [],
    }
    data.update(overrides)
    return Recipient(**data)


@pytest.mark.asyncio
async def test_primary_first_then_linked_in_order():
    fetcher = DummyFetcher({"20111111112": b"a", "27333333334": b"b", "20444444445": b"c"})
    resolver = AttachmentResolver(fetcher, logger=quiet_logger())
    recipient = make_recipient(
        joined_users=[
            {"cuit": "27333333334", "name": "MARIA PEREZ"},
            {"cuit": "20111111112", "name": "ANA PEREZ"},
            {"cuit": "20444444445", "name": "LUIS PEREZ"},
            {"cuit": "27333333334", "name": "MARIA PEREZ"},
        ]
    )
    result = await resolver.resolve(recipient, "veps_marzo")
    assert [a.content for a in result] == [b"a", b"b", b"c"]
    assert [a.filename for a in result] == [
        "ANA PEREZ [20111111112].pdf",
        "MARIA PEREZ [27333333334].pdf",
        "LUIS PEREZ [20444444445].pdf",
    ]
    assert [call[0] for call in fetcher.calls] == ["20111111112", "27333333334", "20444444445"]


@pytest.mark.asyncio
async def test_missing_primary_is_not_fatal_when_linked_exists():
    fetcher = DummyFetcher({"27333333334": b"b"})
    resolver = AttachmentResolver(fetcher, logger=quiet_logger())
    recipient = make_recipient(joined_users=[{"cuit": "27333333334", "name": "MARIA PEREZ"}])
    result = await resolver.resolve(recipient, "veps_marzo")
    assert [a.filename for a in result] == ["MARIA PEREZ [27333333334].pdf"]


@pytest.mark.asyncio
async def test_no_documents_lists_attempted_ids():
    resolver = AttachmentResolver(DummyFetcher({}), logger=quiet_logger())
    recipient = make_recipient(joined_users=[{"cuit": "27333333334", "name": "MARIA"}])
    with pytest.raises(NoAttachmentsError) as excinfo:
        await resolver.resolve(recipient, "veps_marzo")
    assert excinfo.value.attempted == ["20111111112", "27333333334"]
    assert "20111111112, 27333333334" in str(excinfo.value)


@pytest.mark.asyncio
async def test_recipient_without_cuit_reports_sin_cuit():
    resolver = AttachmentResolver(DummyFetcher({}), logger=quiet_logger())
    with pytest.raises(NoAttachmentsError, match="sin-cuit"):
        await resolver.resolve(make_recipient(cuit=None), "veps_marzo")


@pytest.mark.asyncio
async def test_empty_folder_uses_default():
    fetcher = DummyFetcher({"20111111112": b"a"})
    resolver = AttachmentResolver(fetcher, default_folder="veps_default", logger=quiet_logger())
    await resolver.resolve(make_recipient(), None)
    assert fetcher.calls == [("20111111112", "veps_default")]


@pytest.mark.asyncio
async def test_slow_fetch_is_treated_as_missing():
    class SlowFetcher:
        async def fetch(self, cuit, folder):
            await asyncio.sleep(5)
            return b"late"

    resolver = AttachmentResolver(SlowFetcher(), fetch_timeout=0.01, logger=quiet_logger())
    with pytest.raises(NoAttachmentsError):
        await resolver.resolve(make_recipient(), "veps")


@pytest.mark.asyncio
async def test_filesystem_fetcher_matches_cuit(tmp_path):
    folder = tmp_path / "veps_marzo"
    folder.mkdir()
    (folder / "ANA PEREZ [20111111112].pdf").write_bytes(b"%PDF-ana")
    (folder / "notes 20111111112.txt").write_bytes(b"ignored")
    fetcher = FilesystemAttachmentFetcher(str(tmp_path))
    assert await fetcher.fetch("20111111112", "veps_marzo") == b"%PDF-ana"
    with pytest.raises(AttachmentNotFoundError):
        await fetcher.fetch("20999999999", "veps_marzo")
    with pytest.raises(AttachmentNotFoundError):
        await fetcher.fetch("20111111112", "missing_folder")


@pytest.mark.asyncio
async def test_filesystem_fetcher_rejects_traversal(tmp_path):
    base = tmp_path / "base"
    base.mkdir()
    fetcher = FilesystemAttachmentFetcher(str(base))
    with pytest.raises(ValueError, match="Path traversal"):
        await fetcher.fetch("20111111112", "../outside")


@pytest.mark.asyncio
async def test_filesystem_fetcher_ignores_longer_id_with_same_prefix(tmp_path):
    folder = tmp_path / "veps_marzo"
    folder.mkdir()
    (folder / "OTRO CONTRIBUYENTE [20-1-12].pdf").write_bytes(b"%PDF-otro")
    fetcher = FilesystemAttachmentFetcher(str(tmp_path))
    with pytest.raises(AttachmentNotFoundError):
        await fetcher.fetch("20-1-1", "veps_marzo")
    assert await fetcher.fetch("20-1-12", "veps_marzo") == b"%PDF-otro"


class DummyBody:
    def __init__(self, data):
        self.data = data

    async def read(self):
        return self.data


class DummyPaginator:
    def __init__(self, pages):
        self.pages = pages
        self.kwargs = None

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        pages = self.pages

        async def generator():
            for page in pages:
                yield page

        return generator()


class DummyS3Client:
    def __init__(self, pages, objects):
        self.paginator = DummyPaginator(pages)
        self.objects = objects
        self.requested = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self.paginator

    async def get_object(self, Bucket, Key):
        self.requested.append((Bucket, Key))
        return {"Body": DummyBody(self.objects[Key])}


class DummySession:
    def __init__(self, client):
        self._client = client
        self.client_args = None

    def client(self, service, endpoint_url=None):
        self.client_args = (service, endpoint_url)
        return self._client


@pytest.mark.asyncio
async def test_s3_fetcher_downloads_first_matching_pdf():
    key = "veps_marzo/ANA PEREZ [20111111112].pdf"
    client = DummyS3Client(
        pages=[
            {"Contents": [{"Key": "veps_marzo/readme.txt"}]},
            {"Contents": [{"Key": key}]},
        ],
        objects={key: b"%PDF-ana"},
    )
    session = DummySession(client)
    fetcher = S3AttachmentFetcher("veps-facturacion", endpoint_url="https://nyc3.example.com", session=session)
    assert await fetcher.fetch("20111111112", "veps_marzo") == b"%PDF-ana"
    assert session.client_args == ("s3", "https://nyc3.example.com")
    assert client.paginator.kwargs == {"Bucket": "veps-facturacion", "Prefix": "veps_marzo/"}
    assert client.requested == [("veps-facturacion", key)]


@pytest.mark.asyncio
async def test_s3_fetcher_raises_when_nothing_matches():
    client = DummyS3Client(pages=[{}], objects={})
    fetcher = S3AttachmentFetcher("veps-facturacion", session=DummySession(client))
    with pytest.raises(AttachmentNotFoundError):
        await fetcher.fetch("20111111112", "veps_marzo")


@pytest.mark.asyncio
async def test_s3_fetcher_ignores_longer_id_with_same_prefix():
    key = "veps_marzo/OTRO CONTRIBUYENTE [20111111112].pdf"
    client = DummyS3Client(pages=[{"Contents": [{"Key": key}]}], objects={key: b"%PDF-otro"})
    fetcher = S3AttachmentFetcher("veps-facturacion", session=DummySession(client))
    with pytest.raises(AttachmentNotFoundError):
        await fetcher.fetch("2011111111", "veps_marzo")
    assert client.requested == []


def test_build_fetcher_selects_backend(tmp_path):
    fs = build_fetcher(StorageConfig(backend="filesystem", base_dir=str(tmp_path)))
    assert isinstance(fs, FilesystemAttachmentFetcher)
    s3 = build_fetcher(StorageConfig(backend="s3", bucket="veps-facturacion", region="nyc3"))
    assert isinstance(s3, S3AttachmentFetcher)
    with pytest.raises(ValueError):
        build_fetcher(StorageConfig(backend="ftp"))
