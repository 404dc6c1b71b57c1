"""
In-memory backing store.

Stands in for the document platform that owns durable storage: point lookups,
indexed queries and a simple case-insensitive search over key strings. Every
mutation the sync engine performs goes through ``transaction()``, which
serialises writers and rolls all tables back if the block raises, so a
multi-record write (three usage counters, a key plus its projection rows)
either lands completely or not at all.

The rollback backup is a deep copy of every table taken when the transaction
opens, so each write costs time proportional to the whole store and a bulk
import of N keys is quadratic. That is acceptable for a single-process store
holding one project's content; a durable backend would journal only the
records a transaction touches. A rollback swaps the copies in, so records
fetched before a failed transaction are no longer the live ones.
"""
import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from src.models import (
    GlossaryTerm,
    Language,
    Namespace,
    Project,
    RecordStatus,
    ReferenceMapping,
    TranslationKey,
    TranslationValue,
    Workspace,
)

_TABLES = (
    "workspaces",
    "projects",
    "namespaces",
    "languages",
    "keys",
    "values",
    "glossary_terms",
    "reference_mappings",
)


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryStorage:
    def __init__(self):
        self._tables: Dict[str, dict] = {name: {} for name in _TABLES}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStorage"]:
        """Run a block of writes atomically against the store."""
        async with self._lock:
            backup = copy.deepcopy(self._tables)
            try:
                yield self
            except BaseException:
                self._tables = backup
                raise

    # --- tables -----------------------------------------------------------

    @property
    def workspaces(self) -> Dict[str, Workspace]:
        return self._tables["workspaces"]

    @property
    def projects(self) -> Dict[str, Project]:
        return self._tables["projects"]

    @property
    def namespaces(self) -> Dict[str, Namespace]:
        return self._tables["namespaces"]

    @property
    def languages(self) -> Dict[str, Language]:
        return self._tables["languages"]

    @property
    def keys(self) -> Dict[str, TranslationKey]:
        return self._tables["keys"]

    @property
    def values(self) -> Dict[Tuple[str, str], TranslationValue]:
        """Projection rows indexed by (key_id, language_id)."""
        return self._tables["values"]

    @property
    def glossary_terms(self) -> Dict[str, GlossaryTerm]:
        return self._tables["glossary_terms"]

    @property
    def reference_mappings(self) -> Dict[str, ReferenceMapping]:
        return self._tables["reference_mappings"]

    # --- seeding ------------------------------------------------------------

    def add_workspace(self, tenant_id: str, name: str, key_limit: int) -> Workspace:
        workspace = Workspace(id=new_id(), tenant_id=tenant_id, name=name, key_limit=key_limit)
        self.workspaces[workspace.id] = workspace
        return workspace

    def add_project(self, workspace_id: str, name: str) -> Project:
        project = Project(id=new_id(), workspace_id=workspace_id, name=name)
        self.projects[project.id] = project
        return project

    def add_namespace(self, project_id: str, name: str) -> Namespace:
        namespace = Namespace(id=new_id(), project_id=project_id, name=name)
        self.namespaces[namespace.id] = namespace
        return namespace

    def add_language(self, project_id: str, code: str, name: str = "", primary: bool = False,
                     rules: Optional[Dict[str, str]] = None) -> Language:
        language = Language(id=new_id(), project_id=project_id, code=code, name=name or code, rules=rules or {})
        self.languages[language.id] = language
        if primary:
            self.projects[project_id].primary_language_id = language.id
        return language

    # --- indexed queries ------------------------------------------------------

    def find_live_key(self, project_id: str, namespace_id: str, key: str) -> Optional[TranslationKey]:
        for doc in self.keys.values():
            if (doc.project_id == project_id and doc.namespace_id == namespace_id
                    and doc.key == key and not doc.is_deleted):
                return doc
        return None

    def live_keys(self, project_id: str, namespace_id: Optional[str] = None) -> List[TranslationKey]:
        return [
            doc for doc in self.keys.values()
            if doc.project_id == project_id
            and (namespace_id is None or doc.namespace_id == namespace_id)
            and not doc.is_deleted
        ]

    def search_keys(self, project_id: str, text: str, namespace_id: Optional[str] = None) -> List[TranslationKey]:
        needle = text.lower()
        return [doc for doc in self.live_keys(project_id, namespace_id) if needle in doc.key.lower()]

    def live_languages(self, project_id: str) -> List[Language]:
        return [
            lang for lang in self.languages.values()
            if lang.project_id == project_id and lang.status is RecordStatus.ACTIVE
        ]

    def language_by_code(self, project_id: str, code: str) -> Optional[Language]:
        for lang in self.live_languages(project_id):
            if lang.code == code:
                return lang
        return None

    def values_for_language(self, project_id: str, namespace_id: str, language_id: str) -> List[TranslationValue]:
        return [
            row for row in self.values.values()
            if row.project_id == project_id and row.namespace_id == namespace_id and row.language_id == language_id
        ]

    def terms_for_project(self, project_id: str) -> List[GlossaryTerm]:
        terms = [term for term in self.glossary_terms.values() if term.project_id == project_id]
        return sorted(terms, key=lambda t: t.term)

    def mappings_for_key(self, key_id: str) -> List[ReferenceMapping]:
        return [m for m in self.reference_mappings.values() if m.key_id == key_id]
