"""
Batch Dispatcher.

A dispatch chunk walks Queued -> Resolving -> Dispatching -> Merging ->
Unlocking. Each target language is translated by its own task and merged as
soon as that task completes, so Merging overlaps the tail of Dispatching. A
failing language is recorded on the result and never cancels its siblings.
Unlocking always runs, so a chunk cannot leave its keys locked.

Chunks are consumed by ``DispatchQueue``, a fixed pool of worker tasks
reading from an ``asyncio.Queue``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from tqdm.asyncio import tqdm

from src.errors import LanguageNotFoundError, PartialDispatchFailure
from src.glossary import GlossaryResolver
from src.key_store import KeyStore, SourceSnapshot
from src.models import CallerIdentity, DispatchChunk, Language, Scalar
from src.storage import new_id
from src.translation_invoker import TranslationInvoker, format_style_rules

logger = logging.getLogger("translation_sync")

DEFAULT_CHUNK_SIZE = 20


class DispatchState(Enum):
    QUEUED = "queued"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    UNLOCKING = "unlocking"


@dataclass
class DispatchResult:
    chunk_id: str
    project_id: str
    states: List[DispatchState] = field(default_factory=list)
    locked_key_ids: List[str] = field(default_factory=list)
    unlocked_key_ids: List[str] = field(default_factory=list)
    source_language_id: Optional[str] = None
    # Languages the chunk intended to translate into; compare against
    # freshness flags to tell "failed" from "never requested".
    target_language_ids: List[str] = field(default_factory=list)
    source_key_ids: List[str] = field(default_factory=list)
    failures: List[PartialDispatchFailure] = field(default_factory=list)
    written: Dict[str, List[str]] = field(default_factory=dict)
    kept_manual_edits: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return DispatchState.DISPATCHING not in self.states


def split_into_chunks(key_ids: Iterable[str], chunk_size: int) -> List[List[str]]:
    """Split key ids into ordered chunks of at most ``chunk_size``, dropping duplicates."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    unique_ids = list(dict.fromkeys(key_ids))
    return [unique_ids[i:i + chunk_size] for i in range(0, len(unique_ids), chunk_size)]


class BatchDispatcher:
    def __init__(
            self,
            key_store: KeyStore,
            glossary_resolver: GlossaryResolver,
            invoker: TranslationInvoker,
            style_rules: Optional[Dict[str, List[str]]] = None,
            manual_edits_win: bool = True,
            show_progress: bool = False,
            chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        self.key_store = key_store
        self.glossary_resolver = glossary_resolver
        self.invoker = invoker
        self.style_rules = style_rules or {}
        self.manual_edits_win = manual_edits_win
        self.show_progress = show_progress
        self.chunk_size = chunk_size
        self._scheduler = None

    def attach_scheduler(self, scheduler) -> None:
        self._scheduler = scheduler

    def style_rules_text(self, language: Language) -> str:
        """Configured rules for the language code followed by the language's own rules."""
        rules = list(self.style_rules.get(language.code, []))
        rules.extend(language.rules.values())
        return format_style_rules(language.name, rules)

    # --- triggering -----------------------------------------------------------

    async def trigger_batch_translation(
            self,
            project_id: str,
            key_ids: Iterable[str],
            target_language_ids: Optional[Iterable[str]] = None,
            source_language_id: Optional[str] = None,
            chunk_size: Optional[int] = None,
            identity: Optional[CallerIdentity] = None
    ) -> List[DispatchChunk]:
        """
        Split ``key_ids`` into chunks, lock each chunk's keys and queue it.

        ``target_language_ids`` of None means every project language except the
        source. Returns the queued chunks; the caller does not wait for them.

        Raises:
            LanguageNotFoundError: a requested language is not part of the project.
        """
        project = self.key_store.get_project(project_id, identity)
        if source_language_id is not None:
            self.key_store.get_language(project.id, source_language_id)
        targets = None
        if target_language_ids is not None:
            targets = tuple(dict.fromkeys(target_language_ids))
            for language_id in targets:
                self.key_store.get_language(project.id, language_id)

        chunks = []
        for chunk_key_ids in split_into_chunks(key_ids, chunk_size or self.chunk_size):
            chunk_id = new_id()
            locked = await self.key_store.acquire_leases(chunk_key_ids, chunk_id)
            if not locked:
                logger.warning(f"No lockable keys in chunk {chunk_id}; nothing to queue.")
                continue
            chunk = DispatchChunk(
                chunk_id=chunk_id,
                project_id=project.id,
                key_ids=tuple(locked),
                source_language_id=source_language_id,
                target_language_ids=targets,
            )
            chunks.append(chunk)
            self._enqueue(chunk)

        logger.info(f"Queued {len(chunks)} dispatch chunk(s) for project {project.id}.")
        return chunks

    def _enqueue(self, chunk: DispatchChunk) -> None:
        if self._scheduler is None:
            raise RuntimeError("BatchDispatcher has no scheduler attached.")
        self._scheduler.enqueue(chunk)

    # --- chunk state machine ---------------------------------------------------

    def _transition(self, result: DispatchResult, state: DispatchState) -> None:
        result.states.append(state)
        logger.debug(f"Chunk {result.chunk_id} -> {state.value}")

    def _resolve_targets(self, chunk: DispatchChunk, source_language_id: str) -> List[Language]:
        live = self.key_store.live_languages(chunk.project_id)
        if chunk.target_language_ids is None:
            return [lang for lang in live if lang.id != source_language_id]

        by_id = {lang.id: lang for lang in live}
        targets = []
        for language_id in chunk.target_language_ids:
            if language_id == source_language_id:
                continue
            if language_id not in by_id:
                logger.warning(f"Target language {language_id} no longer exists; skipping it in chunk {chunk.chunk_id}.")
                continue
            targets.append(by_id[language_id])
        return targets

    async def _translate_language(
            self,
            chunk: DispatchChunk,
            source_language: Language,
            target: Language,
            source_values: Dict[str, Scalar]
    ) -> Tuple[Language, Optional[Dict[str, Scalar]], Optional[Exception]]:
        try:
            rules = self.glossary_resolver.resolve(chunk.project_id, target.id)
            translated = await self.invoker.translate(
                source_values,
                target,
                rules,
                self.style_rules_text(target),
                source_language
            )
            return target, translated, None
        except Exception as exc:
            logger.error(f"Translation into {target.code} failed for chunk {chunk.chunk_id}: "
                         f"{exc.__class__.__name__} - {exc}")
            return target, None, exc

    async def _merge_language(
            self,
            chunk: DispatchChunk,
            target: Language,
            translated: Dict[str, Scalar],
            read_versions: Dict[str, int],
            result: DispatchResult
    ) -> None:
        if DispatchState.MERGING not in result.states:
            self._transition(result, DispatchState.MERGING)
        report = await self.key_store.merge_translations(
            chunk.chunk_id, {target.id: translated}, read_versions, self.manual_edits_win
        )
        for language_id, key_ids in report.written.items():
            result.written.setdefault(language_id, []).extend(key_ids)
        result.kept_manual_edits.extend(report.kept_manual_edits)
        for key_id, language_id in report.kept_manual_edits:
            logger.info(f"Kept manual edit of key {key_id} in language {language_id}.")

    async def _fan_out(
            self,
            chunk: DispatchChunk,
            source_language: Language,
            targets: List[Language],
            snapshot: SourceSnapshot,
            result: DispatchResult
    ) -> None:
        """Translate into every target concurrently and merge each language as soon as it completes."""
        tasks = [
            asyncio.create_task(self._translate_language(chunk, source_language, target, snapshot.source_values))
            for target in targets
        ]
        try:
            for coro in tqdm.as_completed(tasks, desc=f"Chunk {chunk.chunk_id[:8]}", unit="language",
                                          disable=not self.show_progress):
                target, translated, error = await coro
                if error is not None:
                    result.failures.append(PartialDispatchFailure(
                        chunk_id=chunk.chunk_id,
                        language_id=target.id,
                        language_code=target.code,
                        error=f"{error.__class__.__name__}: {error}",
                    ))
                    continue
                await self._merge_language(chunk, target, translated, snapshot.read_versions, result)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def process_chunk(self, chunk: DispatchChunk) -> DispatchResult:
        """Run one chunk through its full lock, translate, merge and unlock cycle."""
        result = DispatchResult(chunk_id=chunk.chunk_id, project_id=chunk.project_id)
        self._transition(result, DispatchState.QUEUED)
        try:
            result.locked_key_ids = await self.key_store.acquire_leases(chunk.key_ids, chunk.chunk_id)

            self._transition(result, DispatchState.RESOLVING)
            project = self.key_store.get_project(chunk.project_id)
            source_language_id = chunk.source_language_id or project.primary_language_id
            if source_language_id is None:
                logger.warning(f"Project {project.id} has no primary language; chunk {chunk.chunk_id} is a no-op.")
                return result
            source_language = self.key_store.get_language(project.id, source_language_id)
            result.source_language_id = source_language.id
            targets = self._resolve_targets(chunk, source_language.id)
            result.target_language_ids = [target.id for target in targets]

            snapshot = await self.key_store.snapshot_sources(
                result.locked_key_ids, source_language.id, result.target_language_ids, chunk.chunk_id
            )
            result.source_key_ids = list(snapshot.source_values)
            if not snapshot.source_values or not targets:
                logger.info(f"Chunk {chunk.chunk_id} has nothing to translate; unlocking.")
                return result

            self._transition(result, DispatchState.DISPATCHING)
            await self._fan_out(chunk, source_language, targets, snapshot, result)
            return result
        except LanguageNotFoundError as exc:
            logger.error(f"Chunk {chunk.chunk_id} cannot resolve its source language: {exc}")
            return result
        finally:
            self._transition(result, DispatchState.UNLOCKING)
            result.unlocked_key_ids = await self.key_store.release_leases(chunk.key_ids, chunk.chunk_id)
            written = sum(len(ids) for ids in result.written.values())
            logger.info(
                f"Chunk {chunk.chunk_id} done: {len(result.unlocked_key_ids)} key(s) unlocked, "
                f"{written} value(s) written, {len(result.failures)} language failure(s)."
            )


class DispatchQueue:
    """Fixed-size pool of workers consuming dispatch chunks from a queue."""

    def __init__(self, dispatcher: BatchDispatcher, workers: int = 4):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.dispatcher = dispatcher
        self.worker_count = workers
        self.results: List[DispatchResult] = []
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        dispatcher.attach_scheduler(self)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"dispatch-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.debug(f"Started {self.worker_count} dispatch worker(s).")

    def enqueue(self, chunk: DispatchChunk) -> None:
        if self._queue is None:
            self.start()
        self._queue.put_nowait(chunk)

    async def _worker(self, index: int) -> None:
        while True:
            chunk = await self._queue.get()
            try:
                self.results.append(await self.dispatcher.process_chunk(chunk))
            except Exception as exc:
                # process_chunk already released the chunk's leases in its finally block.
                logger.error(f"Worker {index} failed on chunk {chunk.chunk_id}: {exc}", exc_info=True)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued chunk, including ones queued meanwhile, has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
