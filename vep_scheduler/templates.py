"""Message template resolution with a process-lifetime cache."""

from __future__ import annotations

from typing import Dict, Optional, Protocol

from .errors import TemplateMissingError
from .logger import get_logger
from .models import JobCategory

DEFAULT_TEMPLATES: Dict[JobCategory, str] = {
    JobCategory.AUTONOMO: (
        "Hola {nombre}, buenos días, cómo estás? Te paso el vep de autónomo vence {caducate}.\\n"
    ),
    JobCategory.CREDENCIAL: (
        "Hola {nombre}, buenos días, cómo estás? Te paso la credencial del monotributo de "
        "{mes_siguiente}, vence el {caducate}. El mismo ya cuenta con la recategorizacion.\\n"
    ),
    JobCategory.MONOTRIBUTO: (
        "Hola {nombre}, buenos días, cómo estás? Te paso el vep del monotributo del mes de "
        "{mes_siguiente}, vence el {caducate}. el mismo ya tiene la recategorizacion realizada.\\n"
    ),
}


class TemplateStore(Protocol):
    async def get_template(self, category: str) -> Optional[dict]:
        ...


class TemplateResolver:
    """Resolve the message template of a job category.

    Stored templates win over the built-in defaults. A stored template that
    is blank blocks sending for that category instead of falling back.
    """

    def __init__(self, store: TemplateStore, logger=None):
        self._store = store
        self._cache: Dict[str, str] = {}
        self.logger = logger or get_logger()

    async def resolve(self, category: str) -> str:
        cached = self._cache.get(category)
        if cached and cached.strip():
            return cached

        row = await self._store.get_template(category)
        if row is not None:
            text = row.get("template") or ""
            if not text.strip():
                raise TemplateMissingError(category, "stored template is blank")
            self.logger.debug("Loaded stored template for category %s", category)
            self._cache[category] = text
            return text

        known = JobCategory.parse(category)
        if known is None:
            raise TemplateMissingError(category, "unknown category")
        text = DEFAULT_TEMPLATES.get(known, "")
        if not text.strip():
            raise TemplateMissingError(category, "default template is empty")
        self.logger.info("No stored template for category %s, using built-in default", category)
        self._cache[category] = text
        return text

    def cached_categories(self) -> list[str]:
        return sorted(self._cache)
