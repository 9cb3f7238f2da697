"""Project documents offered as sources on assistant replies."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .errors import LocalPersistenceDisabled
from .models import ChecklistItem, Source

logger = logging.getLogger(__name__)

MAX_SOURCES = 5


@dataclass
class KnowledgeChecklist:
    access_checked: bool = False
    search_prepared: bool = False
    permission_filtered: bool = False
    index_refreshed: bool = False

    def items(self) -> List[ChecklistItem]:
        return [
            ChecklistItem("Acesso ao acervo global OK", self.access_checked),
            ChecklistItem("Busca preparada", self.search_prepared),
            ChecklistItem("Permissões aplicadas", self.permission_filtered),
            ChecklistItem("Índice atualizado", self.index_refreshed),
        ]


@dataclass
class KnowledgeResult:
    files: List[Source] = field(default_factory=list)
    checklist: KnowledgeChecklist = field(default_factory=KnowledgeChecklist)


def _source(row: Dict[str, Any]) -> Source:
    return Source(
        id=str(row.get("id")),
        filename=str(row.get("file_name") or row.get("file_path") or row.get("id")),
        url=row.get("file_path"),
    )


class KnowledgeIndex:
    """Reads the ``documents`` table through whatever store is connected.

    Nothing is cached or written locally; with no store the result is empty
    and every checklist entry is false.
    """

    def __init__(self, store_provider: Callable[[], Any]) -> None:
        self._store_provider = store_provider

    def query_accessible(self, project_id: str, limit: int = MAX_SOURCES) -> KnowledgeResult:
        store = self._store_provider()
        if store is None:
            return KnowledgeResult()

        checklist = KnowledgeChecklist(access_checked=True)
        try:
            own = store.select("documents", filters={"project_id": project_id})
            checklist.search_prepared = True
            shared = store.select("documents", filters={"is_global": True})
        except Exception as e:
            logger.warning("document lookup failed for project %s: %s", project_id, e)
            return KnowledgeResult(checklist=checklist)
        checklist.permission_filtered = True

        seen: Dict[str, Source] = {}
        for row in own + shared:
            src = _source(row)
            seen.setdefault(src.id, src)
        checklist.index_refreshed = True
        return KnowledgeResult(files=list(seen.values())[:limit], checklist=checklist)

    def add_file(self, *args: Any, **kwargs: Any) -> Source:
        raise LocalPersistenceDisabled()

    def remove_file(self, *args: Any, **kwargs: Any) -> None:
        raise LocalPersistenceDisabled()

    def set_global(self, *args: Any, **kwargs: Any) -> None:
        raise LocalPersistenceDisabled()
