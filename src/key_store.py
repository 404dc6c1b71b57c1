"""
Key Store: the canonical per-key record of values, freshness flags and locks.

Every write path keeps three things consistent inside one storage transaction:
the ``TranslationKey`` document, its ``TranslationValue`` projection rows, and
(for create/delete) the workspace/project/namespace usage counters.

Locking is a lease: a ``Locked`` key names the dispatch chunk that owns it and
an expiry. Acquisition is a compare-and-swap under the store transaction, an
expired lease counts as unlocked, and only the owner may release it.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from src.change_diff import unflatten_content
from src.errors import (
    AccessDeniedError,
    DuplicateKeyError,
    KeyLockedError,
    KeyNotFoundError,
    LanguageNotFoundError,
    NamespaceNotFoundError,
    ProjectNotFoundError,
    QuotaExceededError,
)
from src.models import (
    CallerIdentity,
    DispatchChunk,
    Freshness,
    KeyLease,
    KeyStatus,
    Language,
    Namespace,
    Project,
    RecordStatus,
    ReferenceMapping,
    Scalar,
    TranslationKey,
    TranslationValue,
    Workspace,
)
from src.storage import InMemoryStorage, new_id

logger = logging.getLogger("translation_sync")

DEFAULT_LEASE_SECONDS = 600.0


class ChunkScheduler(Protocol):
    def enqueue(self, chunk: DispatchChunk) -> None:
        ...


@dataclass
class SourceSnapshot:
    """What a dispatch chunk read at its Resolving step."""
    source_values: Dict[str, Scalar] = field(default_factory=dict)
    read_versions: Dict[str, int] = field(default_factory=dict)


@dataclass
class MergeReport:
    written: Dict[str, List[str]] = field(default_factory=dict)
    # (key_id, language_id) pairs kept because a manual edit landed after the snapshot.
    kept_manual_edits: List[Tuple[str, str]] = field(default_factory=list)


def _is_missing(value: Optional[Scalar]) -> bool:
    return value is None or value == ""


class KeyStore:
    def __init__(
            self,
            storage: InMemoryStorage,
            lease_seconds: float = DEFAULT_LEASE_SECONDS,
            clock: Callable[[], float] = time.time,
            scheduler: Optional[ChunkScheduler] = None
    ):
        self.storage = storage
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._scheduler = scheduler

    def attach_scheduler(self, scheduler: ChunkScheduler) -> None:
        self._scheduler = scheduler

    # --- scope resolution ---------------------------------------------------

    def _authorize(self, workspace: Workspace, identity: Optional[CallerIdentity]) -> None:
        if identity is not None and identity.org_id != workspace.tenant_id:
            raise AccessDeniedError(f"Workspace '{workspace.id}' does not belong to the caller's organization")

    def _project(self, project_id: str, identity: Optional[CallerIdentity] = None) -> Tuple[Project, Workspace]:
        project = self.storage.projects.get(project_id)
        if project is None or project.status is not RecordStatus.ACTIVE:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        workspace = self.storage.workspaces.get(project.workspace_id)
        if workspace is None:
            raise ProjectNotFoundError(f"Workspace for project '{project_id}' not found")
        self._authorize(workspace, identity)
        return project, workspace

    def _namespace(self, project: Project, namespace_id: str) -> Namespace:
        namespace = self.storage.namespaces.get(namespace_id)
        if namespace is None or namespace.project_id != project.id or namespace.status is not RecordStatus.ACTIVE:
            raise NamespaceNotFoundError(f"Namespace '{namespace_id}' not found")
        return namespace

    def _language(self, project: Project, language_id: str) -> Language:
        language = self.storage.languages.get(language_id)
        if language is None or language.project_id != project.id or language.status is not RecordStatus.ACTIVE:
            raise LanguageNotFoundError(f"Language '{language_id}' not found")
        return language

    def _live_key(self, key_id: str) -> TranslationKey:
        doc = self.storage.keys.get(key_id)
        if doc is None or doc.is_deleted:
            raise KeyNotFoundError(f"Translation key '{key_id}' not found")
        return doc

    def _adjust_usage(self, doc: TranslationKey, delta: int) -> None:
        namespace = self.storage.namespaces[doc.namespace_id]
        project = self.storage.projects[doc.project_id]
        workspace = self.storage.workspaces[project.workspace_id]
        namespace.usage.translation_keys += delta
        project.usage.translation_keys += delta
        workspace.usage.translation_keys += delta

    def _upsert_projection(self, doc: TranslationKey, language_id: str) -> None:
        self.storage.values[(doc.id, language_id)] = TranslationValue(
            project_id=doc.project_id,
            namespace_id=doc.namespace_id,
            language_id=language_id,
            key_id=doc.id,
            key=doc.key,
            value=doc.values[language_id],
        )

    def _new_lease(self, owner: str, locked_version: int) -> KeyLease:
        return KeyLease(owner=owner, expires_at=self.clock() + self.lease_seconds, locked_version=locked_version)

    def _schedule(self, chunk: DispatchChunk) -> None:
        if self._scheduler is None:
            logger.warning(f"No dispatch scheduler attached; keys {list(chunk.key_ids)} "
                           f"stay locked until their lease expires.")
            return
        self._scheduler.enqueue(chunk)

    # --- public operations ----------------------------------------------------

    async def create_key(
            self,
            project_id: str,
            namespace_id: str,
            key: str,
            primary_value: Scalar,
            identity: Optional[CallerIdentity] = None
    ) -> str:
        """
        Create a key with its primary value and schedule a fan-out to every target language.

        Raises:
            ValueError: the primary value is None or empty.
            DuplicateKeyError: a live key with the same string exists in the namespace.
            QuotaExceededError: the workspace is at its key limit.
        """
        if _is_missing(primary_value):
            raise ValueError(f"Key '{key}' needs a primary value")
        chunk_id = new_id()
        async with self.storage.transaction():
            project, workspace = self._project(project_id, identity)
            namespace = self._namespace(project, namespace_id)
            if project.primary_language_id is None:
                raise LanguageNotFoundError(f"Project '{project_id}' has no primary language")
            if workspace.usage.translation_keys >= workspace.key_limit:
                raise QuotaExceededError(
                    f"Workspace '{workspace.id}' reached its limit of {workspace.key_limit} translation keys"
                )
            if self.storage.find_live_key(project.id, namespace.id, key) is not None:
                raise DuplicateKeyError(f"Key '{key}' already exists")

            doc = TranslationKey(
                id=new_id(),
                project_id=project.id,
                namespace_id=namespace.id,
                key=key,
                status=KeyStatus.LOCKED,
            )
            doc.record_write(project.primary_language_id, primary_value)
            doc.lease = self._new_lease(chunk_id, doc.version)
            doc.freshness[project.primary_language_id] = Freshness.FRESH
            self.storage.keys[doc.id] = doc
            self._adjust_usage(doc, +1)
            self._upsert_projection(doc, project.primary_language_id)

        logger.info(f"Created key '{key}' ({doc.id}); scheduling translation.")
        self._schedule(DispatchChunk(chunk_id=chunk_id, project_id=project.id, key_ids=(doc.id,)))
        return doc.id

    async def import_key(
            self,
            project_id: str,
            namespace_id: str,
            key: str,
            values: Dict[str, Scalar],
            identity: Optional[CallerIdentity] = None
    ) -> str:
        """
        Insert an already translated key as Active with every given language
        fresh. Nothing is dispatched. Same duplicate and quota checks as
        ``create_key``; ``values`` must hold a primary-language value.
        """
        async with self.storage.transaction():
            project, workspace = self._project(project_id, identity)
            namespace = self._namespace(project, namespace_id)
            if project.primary_language_id is None:
                raise LanguageNotFoundError(f"Project '{project_id}' has no primary language")
            if _is_missing(values.get(project.primary_language_id)):
                raise ValueError(f"Key '{key}' needs a primary value")
            if workspace.usage.translation_keys >= workspace.key_limit:
                raise QuotaExceededError(
                    f"Workspace '{workspace.id}' reached its limit of {workspace.key_limit} translation keys"
                )
            if self.storage.find_live_key(project.id, namespace.id, key) is not None:
                raise DuplicateKeyError(f"Key '{key}' already exists")

            doc = TranslationKey(id=new_id(), project_id=project.id, namespace_id=namespace.id, key=key)
            for language_id, value in values.items():
                self._language(project, language_id)
                if _is_missing(value):
                    continue
                doc.record_write(language_id, value)
                doc.freshness[language_id] = Freshness.FRESH
                self._upsert_projection(doc, language_id)
            self.storage.keys[doc.id] = doc
            self._adjust_usage(doc, +1)
        return doc.id

    async def update_value(
            self,
            key_id: str,
            language_id: str,
            value: Scalar,
            identity: Optional[CallerIdentity] = None
    ) -> None:
        """
        Write one language's value.

        A primary-language write re-locks the key, marks every other language
        stale and schedules a fan-out for this key. A non-primary write only
        marks that language fresh; it is accepted even while the key is locked.

        Raises:
            KeyLockedError: primary-language write while a dispatch holds the key.
            ValueError: primary-language write of None or an empty string.
        """
        chunk_id = new_id()
        async with self.storage.transaction():
            doc = self._live_key(key_id)
            project, _ = self._project(doc.project_id, identity)
            self._language(project, language_id)
            is_primary = language_id == project.primary_language_id

            if is_primary and _is_missing(value):
                raise ValueError(f"Key '{doc.key}' needs a primary value; delete the key instead")
            if is_primary and doc.is_locked(self.clock()):
                raise KeyLockedError(f"Key '{doc.key}' is currently being processed. Please wait.")

            doc.record_write(language_id, value)
            doc.freshness[language_id] = Freshness.FRESH
            if is_primary:
                for other_id in doc.freshness:
                    if other_id != language_id:
                        doc.freshness[other_id] = Freshness.STALE
                doc.status = KeyStatus.LOCKED
                doc.lease = self._new_lease(chunk_id, doc.version)
            self._upsert_projection(doc, language_id)

        if is_primary:
            logger.info(f"Primary value of '{doc.key}' changed; scheduling translation.")
            self._schedule(DispatchChunk(chunk_id=chunk_id, project_id=doc.project_id, key_ids=(doc.id,)))

    async def clear_value(self, key_id: str, language_id: str) -> None:
        """Remove a non-primary language's value and its projection row."""
        async with self.storage.transaction():
            doc = self._live_key(key_id)
            project, _ = self._project(doc.project_id)
            if language_id == project.primary_language_id:
                raise LanguageNotFoundError("The primary value cannot be cleared; delete the key instead")
            doc.version += 1
            doc.values.pop(language_id, None)
            doc.freshness.pop(language_id, None)
            doc.language_versions[language_id] = doc.version
            self.storage.values.pop((doc.id, language_id), None)

    async def delete_keys(self, key_ids: Iterable[str], identity: Optional[CallerIdentity] = None) -> int:
        """
        Soft-delete keys, drop their projection rows and reference mappings,
        and decrement the usage counters by exactly the number deleted.

        Already deleted or unknown ids are skipped.
        """
        count = 0
        async with self.storage.transaction():
            for key_id in key_ids:
                doc = self.storage.keys.get(key_id)
                if doc is None or doc.is_deleted:
                    continue
                self._project(doc.project_id, identity)

                doc.status = KeyStatus.DELETED
                doc.lease = None
                for language_id in list(doc.values):
                    self.storage.values.pop((doc.id, language_id), None)
                for mapping in self.storage.mappings_for_key(doc.id):
                    del self.storage.reference_mappings[mapping.id]
                self._adjust_usage(doc, -1)
                count += 1

        logger.info(f"Deleted {count} translation key(s).")
        return count

    # --- lease handling used by the dispatcher ----------------------------------

    async def acquire_leases(self, key_ids: Iterable[str], owner: str) -> List[str]:
        """Lock every live key not held by another owner. Returns the ids now held by ``owner``."""
        acquired = []
        async with self.storage.transaction():
            now = self.clock()
            for key_id in key_ids:
                doc = self.storage.keys.get(key_id)
                if doc is None or doc.is_deleted:
                    continue
                if doc.locked_by(owner, now):
                    # Renewal keeps the version baseline taken when the key was first locked.
                    doc.lease = self._new_lease(owner, doc.lease.locked_version)
                    acquired.append(doc.id)
                    continue
                if doc.is_locked(now):
                    logger.warning(f"Key '{doc.key}' is locked by dispatch {doc.lease.owner}; skipping it.")
                    continue
                if doc.lease is not None:
                    logger.warning(f"Taking over expired lease on key '{doc.key}' from {doc.lease.owner}.")
                doc.status = KeyStatus.LOCKED
                doc.lease = self._new_lease(owner, doc.version)
                acquired.append(doc.id)
        return acquired

    async def release_leases(self, key_ids: Iterable[str], owner: str) -> List[str]:
        """Return keys held by ``owner`` to Active. Keys re-leased by someone else are left alone."""
        released = []
        async with self.storage.transaction():
            for key_id in key_ids:
                doc = self.storage.keys.get(key_id)
                if doc is None or doc.is_deleted or doc.status is not KeyStatus.LOCKED:
                    continue
                if doc.lease is not None and doc.lease.owner != owner:
                    continue
                doc.status = KeyStatus.ACTIVE
                doc.lease = None
                released.append(doc.id)
        return released

    async def snapshot_sources(
            self,
            key_ids: Iterable[str],
            source_language_id: str,
            target_language_ids: Iterable[str],
            owner: str
    ) -> SourceSnapshot:
        """
        Read the source value and version of every key the chunk owns, and
        flag each target language as requested (stale) where it has no flag yet.
        Keys without a source value are left out.
        """
        snapshot = SourceSnapshot()
        target_language_ids = list(target_language_ids)
        async with self.storage.transaction():
            for key_id in key_ids:
                doc = self.storage.keys.get(key_id)
                if doc is None or doc.is_deleted:
                    continue
                if doc.lease is not None and doc.lease.owner != owner:
                    continue
                source_value = doc.values.get(source_language_id)
                if _is_missing(source_value):
                    continue
                snapshot.source_values[doc.id] = source_value
                snapshot.read_versions[doc.id] = doc.lease.locked_version if doc.lease is not None else doc.version
                for language_id in target_language_ids:
                    doc.freshness.setdefault(language_id, Freshness.STALE)
        return snapshot

    async def merge_translations(
            self,
            owner: str,
            results_by_language: Dict[str, Dict[str, Scalar]],
            read_versions: Dict[str, int],
            manual_edits_win: bool = True
    ) -> MergeReport:
        """
        Write translated values for the keys in ``read_versions``, mark them
        fresh and upsert their projection rows, all in one transaction.

        With ``manual_edits_win`` a language written after the chunk read its
        snapshot keeps the newer value; otherwise the translation overwrites it.
        """
        report = MergeReport()
        async with self.storage.transaction():
            for key_id, read_version in read_versions.items():
                doc = self.storage.keys.get(key_id)
                if doc is None or doc.is_deleted:
                    continue
                if doc.lease is not None and doc.lease.owner != owner:
                    logger.warning(f"Key '{doc.key}' was re-leased by {doc.lease.owner}; discarding results of {owner}.")
                    continue
                for language_id, translations in results_by_language.items():
                    translated = translations.get(key_id)
                    if _is_missing(translated):
                        continue
                    if manual_edits_win and doc.language_versions.get(language_id, 0) > read_version:
                        report.kept_manual_edits.append((key_id, language_id))
                        continue
                    doc.record_write(language_id, translated)
                    doc.freshness[language_id] = Freshness.FRESH
                    self._upsert_projection(doc, language_id)
                    report.written.setdefault(language_id, []).append(key_id)
        return report

    # --- reads -------------------------------------------------------------------

    def get_key(self, key_id: str) -> TranslationKey:
        return self._live_key(key_id)

    def get_project(self, project_id: str, identity: Optional[CallerIdentity] = None) -> Project:
        project, _ = self._project(project_id, identity)
        return project

    def get_language(self, project_id: str, language_id: str) -> Language:
        project, _ = self._project(project_id)
        return self._language(project, language_id)

    def live_languages(self, project_id: str) -> List[Language]:
        project, _ = self._project(project_id)
        return sorted(self.storage.live_languages(project.id), key=lambda lang: lang.code)

    def find_key(self, project_id: str, namespace_id: str, key: str) -> Optional[TranslationKey]:
        return self.storage.find_live_key(project_id, namespace_id, key)

    def list_keys(self, project_id: str, namespace_id: str, search: Optional[str] = None) -> List[TranslationKey]:
        project, _ = self._project(project_id)
        namespace = self._namespace(project, namespace_id)
        if search:
            docs = self.storage.search_keys(project.id, search, namespace.id)
        else:
            docs = self.storage.live_keys(project.id, namespace.id)
        return sorted(docs, key=lambda d: d.key)

    def search_values(self, project_id: str, text: str) -> List[TranslationValue]:
        needle = text.lower()
        return [
            row for row in self.storage.values.values()
            if row.project_id == project_id and isinstance(row.value, str) and needle in row.value.lower()
        ]

    def freshness_report(self, key_id: str, intended_language_ids: Iterable[str]) -> Dict[str, Freshness]:
        """Classify each language as fresh, stale, or never requested for this key."""
        doc = self._live_key(key_id)
        report = {}
        for language_id in intended_language_ids:
            report[language_id] = doc.freshness.get(language_id, Freshness.NOT_REQUESTED)
        return report

    def build_content_tree(self, project_id: str, namespace_id: str, language_id: str) -> dict:
        """Rebuild a language's nested content tree from its projection rows."""
        project, _ = self._project(project_id)
        namespace = self._namespace(project, namespace_id)
        self._language(project, language_id)
        flat = {row.key: row.value for row in self.storage.values_for_language(project.id, namespace.id, language_id)}
        return unflatten_content(flat)

    async def add_reference_mapping(self, key_id: str, screenshot_id: str,
                                    position: Optional[Dict[str, float]] = None) -> str:
        async with self.storage.transaction():
            doc = self._live_key(key_id)
            mapping = ReferenceMapping(
                id=new_id(),
                key_id=doc.id,
                namespace_id=doc.namespace_id,
                screenshot_id=screenshot_id,
                position=position or {},
            )
            self.storage.reference_mappings[mapping.id] = mapping
        return mapping.id
