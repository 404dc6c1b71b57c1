"""Wire the store, resolver, invoker, dispatcher and worker pool from an AppConfig."""
import asyncio
from dataclasses import dataclass
from typing import Optional

from aiolimiter import AsyncLimiter

from src.app_config import AppConfig
from src.dispatcher import BatchDispatcher, DispatchQueue
from src.glossary import GlossaryResolver
from src.key_store import KeyStore
from src.reconciler import Reconciler
from src.storage import InMemoryStorage
from src.translation_invoker import TranslationInvoker


@dataclass
class SyncPipeline:
    storage: InMemoryStorage
    key_store: KeyStore
    glossary: GlossaryResolver
    invoker: TranslationInvoker
    dispatcher: BatchDispatcher
    queue: DispatchQueue
    reconciler: Reconciler

    async def drain(self) -> None:
        """Wait for every queued dispatch chunk to reach its unlock step."""
        await self.queue.join()

    async def close(self) -> None:
        await self.queue.stop()


def build_invoker(config: AppConfig) -> TranslationInvoker:
    return TranslationInvoker(
        client=config.openai_client,
        model_name=config.model_name,
        semaphore=asyncio.Semaphore(config.max_concurrent_api_calls),
        rate_limiter=AsyncLimiter(config.api_rate_limit, config.api_rate_period),
        max_model_tokens=config.max_model_tokens,
        dry_run=config.dry_run,
    )


def build_pipeline(
        config: AppConfig,
        storage: Optional[InMemoryStorage] = None,
        invoker: Optional[TranslationInvoker] = None
) -> SyncPipeline:
    """Build the full engine. The worker pool starts on the first enqueued chunk."""
    storage = storage or InMemoryStorage()
    key_store = KeyStore(storage, lease_seconds=config.lock_lease_seconds)
    glossary = GlossaryResolver(storage)
    invoker = invoker or build_invoker(config)
    dispatcher = BatchDispatcher(
        key_store,
        glossary,
        invoker,
        style_rules=config.style_rules,
        manual_edits_win=config.manual_edits_win,
        show_progress=config.show_progress,
        chunk_size=config.dispatch_chunk_size,
    )
    queue = DispatchQueue(dispatcher, workers=config.max_concurrent_dispatches)
    key_store.attach_scheduler(queue)
    return SyncPipeline(
        storage=storage,
        key_store=key_store,
        glossary=glossary,
        invoker=invoker,
        dispatcher=dispatcher,
        queue=queue,
        reconciler=Reconciler(key_store),
    )
