import pytest

from vep_scheduler.errors import TemplateMissingError
from vep_scheduler.templates import DEFAULT_TEMPLATES, TemplateResolver
from vep_scheduler.models import JobCategory


class DummyStore:
    def __init__(self, rows=None, error: Exception | None = None):
        self.rows = rows or {}
        self.error = error
        self.calls = []

    async def get_template(self, category):
        self.calls.append(category)
        if self.error:
            raise self.error
        return self.rows.get(category)


@pytest.mark.asyncio
async def test_stored_template_is_cached():
    store = DummyStore({"monotributo": {"type": "monotributo", "template": "Hola {nombre}"}})
    resolver = TemplateResolver(store)
    assert await resolver.resolve("monotributo") == "Hola {nombre}"
    assert await resolver.resolve("monotributo") == "Hola {nombre}"
    assert store.calls == ["monotributo"]
    assert resolver.cached_categories() == ["monotributo"]


@pytest.mark.asyncio
async def test_blank_stored_template_blocks_without_fallback():
    store = DummyStore({"credencial": {"type": "credencial", "template": "   "}})
    resolver = TemplateResolver(store)
    for _ in range(2):
        with pytest.raises(TemplateMissingError):
            await resolver.resolve("credencial")
    assert store.calls == ["credencial", "credencial"]
    assert resolver.cached_categories() == []


@pytest.mark.asyncio
async def test_default_template_used_when_no_row():
    store = DummyStore()
    resolver = TemplateResolver(store)
    text = await resolver.resolve("autónomo")
    assert text == DEFAULT_TEMPLATES[JobCategory.AUTONOMO]
    await resolver.resolve("autónomo")
    assert store.calls == ["autónomo"]


@pytest.mark.asyncio
async def test_unknown_category_without_row_fails():
    resolver = TemplateResolver(DummyStore())
    with pytest.raises(TemplateMissingError) as excinfo:
        await resolver.resolve("ganancias")
    assert excinfo.value.category == "ganancias"
    assert excinfo.value.code == "template_missing"


@pytest.mark.asyncio
async def test_storage_errors_propagate():
    resolver = TemplateResolver(DummyStore(error=RuntimeError("db down")))
    with pytest.raises(RuntimeError, match="db down"):
        await resolver.resolve("monotributo")
