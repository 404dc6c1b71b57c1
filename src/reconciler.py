"""Turn a ChangePatch made against one language's content tree into Key Store operations."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from src.errors import KeyLockedError
from src.key_store import KeyStore
from src.models import CallerIdentity, ChangePatch

logger = logging.getLogger("translation_sync")


@dataclass
class ReconcileReport:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    cleared: List[str] = field(default_factory=list)
    # Paths that name no live key; non-primary edits never create keys.
    unknown_paths: List[str] = field(default_factory=list)
    # Paths whose key was locked by an in-flight dispatch.
    locked_paths: List[str] = field(default_factory=list)
    # Primary-language paths whose new value is null or empty.
    rejected_paths: List[str] = field(default_factory=list)

    @property
    def touched_key_ids(self) -> List[str]:
        return self.created + self.updated + self.cleared


class Reconciler:
    def __init__(self, key_store: KeyStore):
        self.key_store = key_store

    async def reconcile(
            self,
            project_id: str,
            namespace_id: str,
            language_id: str,
            patch: ChangePatch,
            identity: Optional[CallerIdentity] = None
    ) -> ReconcileReport:
        """
        Apply ``patch`` to the canonical store: deletions first, then
        additions, then modifications.

        For the primary language, additions create keys, modifications update
        the primary value (both schedule translation) and deletions delete
        keys. For any other language only existing keys are touched and a
        deletion clears that language's value.
        """
        project = self.key_store.get_project(project_id, identity)
        language = self.key_store.get_language(project.id, language_id)
        is_primary = language.id == project.primary_language_id
        report = ReconcileReport()

        if patch.is_empty():
            return report

        doomed = []
        for entry in patch.delete:
            doc = self.key_store.find_key(project.id, namespace_id, entry.path)
            if doc is None:
                report.unknown_paths.append(entry.path)
            elif is_primary:
                doomed.append(doc.id)
            else:
                await self.key_store.clear_value(doc.id, language.id)
                report.cleared.append(doc.id)
        if doomed:
            await self.key_store.delete_keys(doomed, identity)
            report.deleted.extend(doomed)

        for entry in patch.add + patch.modify:
            doc = self.key_store.find_key(project.id, namespace_id, entry.path)
            if doc is None:
                if not is_primary:
                    report.unknown_paths.append(entry.path)
                    continue
                try:
                    key_id = await self.key_store.create_key(project.id, namespace_id, entry.path, entry.new_value,
                                                             identity)
                except ValueError as value_exc:
                    logger.warning(f"Skipping '{entry.path}': {value_exc}")
                    report.rejected_paths.append(entry.path)
                    continue
                report.created.append(key_id)
                continue
            try:
                await self.key_store.update_value(doc.id, language.id, entry.new_value, identity)
            except KeyLockedError:
                logger.warning(f"Key '{entry.path}' is locked by a running dispatch; its edit was not applied.")
                report.locked_paths.append(entry.path)
                continue
            except ValueError as value_exc:
                logger.warning(f"Skipping '{entry.path}': {value_exc}")
                report.rejected_paths.append(entry.path)
                continue
            report.updated.append(doc.id)

        logger.info(
            f"Reconciled {language.code}: {len(report.created)} created, {len(report.updated)} updated, "
            f"{len(report.deleted)} deleted, {len(report.cleared)} cleared, "
            f"{len(report.unknown_paths)} unknown, {len(report.locked_paths)} locked, "
            f"{len(report.rejected_paths)} rejected."
        )
        return report
