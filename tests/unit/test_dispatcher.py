"""Unit tests for the Batch Dispatcher state machine and its worker pool."""
import asyncio
import unittest
from unittest.mock import AsyncMock, patch

import pytest

from src.dispatcher import BatchDispatcher, DispatchQueue, DispatchState, split_into_chunks
from src.errors import LanguageNotFoundError, TranslationServiceError
from src.glossary import GlossaryResolver
from src.key_store import KeyStore
from src.models import DispatchChunk, Freshness, KeyStatus
from tests.fakes import FakeClock, FakeInvoker, build_seeded_storage


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):
    manual_edits_win = True

    async def asyncSetUp(self):
        self.seeded = build_seeded_storage(key_limit=1000)
        self.storage = self.seeded.storage
        self.clock = FakeClock()
        self.key_store = KeyStore(self.storage, lease_seconds=60, clock=self.clock)
        self.glossary = GlossaryResolver(self.storage)
        self.invoker = FakeInvoker()
        self.dispatcher = BatchDispatcher(
            self.key_store,
            self.glossary,
            self.invoker,
            style_rules={"fr": ["Be formal"]},
            manual_edits_win=self.manual_edits_win,
        )
        self.queue = DispatchQueue(self.dispatcher, workers=2)
        self.key_store.attach_scheduler(self.queue)

    async def asyncTearDown(self):
        await self.queue.stop()

    async def create(self, key="common.welcome", value="Welcome"):
        return await self.key_store.create_key(self.seeded.project_id, self.seeded.namespace_id, key, value)

    async def import_keys(self, count, values=None):
        ids = []
        for index in range(count):
            ids.append(await self.key_store.import_key(
                self.seeded.project_id, self.seeded.namespace_id, f"key.{index:03d}",
                values or {self.seeded.en.id: f"Text {index}"}
            ))
        return ids


class TestFanOut(DispatcherTestCase):
    async def test_new_key_is_translated_into_every_target_and_unlocked(self):
        key_id = await self.create()

        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.values[self.seeded.fr.id], "[fr] Welcome")
        self.assertEqual(doc.values[self.seeded.de.id], "[de] Welcome")
        self.assertEqual(doc.freshness[self.seeded.fr.id], Freshness.FRESH)
        self.assertEqual(doc.freshness[self.seeded.de.id], Freshness.FRESH)
        self.assertEqual(doc.status, KeyStatus.ACTIVE)
        self.assertIsNone(doc.lease)
        self.assertEqual(self.invoker.targets(), ["de", "fr"])

        result = self.queue.results[0]
        self.assertEqual(result.states, [
            DispatchState.QUEUED,
            DispatchState.RESOLVING,
            DispatchState.DISPATCHING,
            DispatchState.MERGING,
            DispatchState.UNLOCKING,
        ])
        self.assertEqual(self.storage.values[(key_id, self.seeded.fr.id)].value, "[fr] Welcome")

    async def test_one_failing_language_does_not_block_the_others(self):
        self.invoker.behaviours["fr"] = TranslationServiceError("upstream down")
        key_id = await self.create()

        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.status, KeyStatus.ACTIVE)
        self.assertEqual(doc.values[self.seeded.de.id], "[de] Welcome")
        self.assertNotIn(self.seeded.fr.id, doc.values)

        result = self.queue.results[0]
        self.assertEqual(len(result.failures), 1)
        self.assertEqual(result.failures[0].language_code, "fr")
        self.assertIn("upstream down", result.failures[0].error)

        report = self.key_store.freshness_report(key_id, [self.seeded.fr.id, self.seeded.de.id])
        self.assertEqual(report, {self.seeded.fr.id: Freshness.STALE, self.seeded.de.id: Freshness.FRESH})

    async def test_each_language_is_merged_as_soon_as_it_completes(self):
        key_id = await self.create()
        seen_by_de = {}

        async def wait_for_fr(target):
            if target.code != "de":
                return
            for _ in range(100):
                if self.seeded.fr.id in self.key_store.get_key(key_id).values:
                    break
                await asyncio.sleep(0.01)
            seen_by_de.update(self.key_store.get_key(key_id).values)

        self.invoker.before_return = wait_for_fr
        await self.queue.join()

        self.assertEqual(seen_by_de[self.seeded.fr.id], "[fr] Welcome")
        self.assertNotIn(self.seeded.de.id, seen_by_de)
        self.assertEqual(self.queue.results[0].states.count(DispatchState.MERGING), 1)
        self.assertEqual(self.queue.results[0].written[self.seeded.de.id], [key_id])

    async def test_unexpected_invoker_error_is_recorded_too(self):
        self.invoker.behaviours["de"] = RuntimeError("bug")
        key_id = await self.create()

        await self.queue.join()

        self.assertEqual(self.key_store.get_key(key_id).status, KeyStatus.ACTIVE)
        self.assertEqual([f.language_code for f in self.queue.results[0].failures], ["de"])

    async def test_stale_value_survives_a_failed_retranslation(self):
        key_id = await self.create()
        await self.queue.join()
        self.invoker.behaviours["fr"] = TranslationServiceError("upstream down")

        await self.key_store.update_value(key_id, self.seeded.en.id, "Hello")
        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.values[self.seeded.fr.id], "[fr] Welcome")
        self.assertEqual(doc.freshness[self.seeded.fr.id], Freshness.STALE)
        self.assertEqual(doc.values[self.seeded.de.id], "[de] Hello")
        self.assertEqual(doc.status, KeyStatus.ACTIVE)

    async def test_glossary_and_style_rules_reach_the_invoker(self):
        self.seeded.fr.rules["tone"] = "Use vous"
        await self.glossary.create_term(self.seeded.project_id, "Bisq", non_translatable=True)

        await self.create()
        await self.queue.join()

        fr_call = next(call for call in self.invoker.calls if call["target"] == "fr")
        self.assertEqual([rule.term for rule in fr_call["glossary_rules"]], ["Bisq"])
        self.assertIn("- Be formal", fr_call["style_rules_text"])
        self.assertIn("- Use vous", fr_call["style_rules_text"])
        self.assertEqual(fr_call["source"], "en")
        de_call = next(call for call in self.invoker.calls if call["target"] == "de")
        self.assertEqual(de_call["style_rules_text"], "")


class TestManualEditWins(DispatcherTestCase):
    manual_edits_win = True

    async def test_manual_edit_during_dispatch_is_not_overwritten(self):
        key_id = await self.create()

        async def edit_while_translating(target):
            if target.code == "fr":
                # The key is locked here; a non-primary edit must still go through.
                self.assertEqual(self.key_store.get_key(key_id).status, KeyStatus.LOCKED)
                await self.key_store.update_value(key_id, self.seeded.fr.id, "manual edit")

        self.invoker.before_return = edit_while_translating
        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.values[self.seeded.fr.id], "manual edit")
        self.assertEqual(doc.values[self.seeded.de.id], "[de] Welcome")
        self.assertEqual(doc.status, KeyStatus.ACTIVE)
        self.assertEqual(self.queue.results[0].kept_manual_edits, [(key_id, self.seeded.fr.id)])

    async def test_manual_edit_while_chunk_is_queued_is_not_overwritten(self):
        key_id = await self.create()
        self.assertEqual(self.key_store.get_key(key_id).status, KeyStatus.LOCKED)

        await self.key_store.update_value(key_id, self.seeded.fr.id, "manual edit")
        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.values[self.seeded.fr.id], "manual edit")
        self.assertEqual(doc.values[self.seeded.de.id], "[de] Welcome")
        self.assertEqual(self.queue.results[0].kept_manual_edits, [(key_id, self.seeded.fr.id)])


class TestLastWriteWins(DispatcherTestCase):
    manual_edits_win = False

    async def test_translation_overwrites_manual_edit_when_configured(self):
        key_id = await self.create()

        async def edit_while_translating(target):
            if target.code == "fr":
                await self.key_store.update_value(key_id, self.seeded.fr.id, "manual edit")

        self.invoker.before_return = edit_while_translating
        await self.queue.join()

        doc = self.key_store.get_key(key_id)
        self.assertEqual(doc.values[self.seeded.fr.id], "[fr] Welcome")
        self.assertEqual(self.queue.results[0].kept_manual_edits, [])


class TestBatchTrigger(DispatcherTestCase):
    async def test_keys_are_split_into_chunks_and_all_unlocked(self):
        key_ids = await self.import_keys(45)

        chunks = await self.dispatcher.trigger_batch_translation(self.seeded.project_id, key_ids, chunk_size=20)
        await self.queue.join()

        self.assertEqual([len(chunk.key_ids) for chunk in chunks], [20, 20, 5])
        self.assertEqual(len(self.queue.results), 3)
        for result in self.queue.results:
            self.assertEqual(sorted(result.locked_key_ids), sorted(result.unlocked_key_ids))
        self.assertTrue(all(self.key_store.get_key(k).status is KeyStatus.ACTIVE for k in key_ids))
        self.assertTrue(all(self.seeded.fr.id in self.key_store.get_key(k).values for k in key_ids))

    async def test_explicit_targets_and_source_override(self):
        key_ids = await self.import_keys(2, values={self.seeded.en.id: "Hi", self.seeded.fr.id: "Salut"})

        await self.dispatcher.trigger_batch_translation(
            self.seeded.project_id, key_ids, target_language_ids=[self.seeded.de.id],
            source_language_id=self.seeded.fr.id
        )
        await self.queue.join()

        self.assertEqual(self.invoker.targets(), ["de"])
        self.assertEqual(self.invoker.calls[0]["source"], "fr")
        self.assertEqual(self.key_store.get_key(key_ids[0]).values[self.seeded.de.id], "[de] Salut")
        self.assertEqual(self.queue.results[0].target_language_ids, [self.seeded.de.id])

    async def test_keys_without_source_value_make_a_noop_chunk(self):
        key_ids = await self.import_keys(2)

        await self.dispatcher.trigger_batch_translation(self.seeded.project_id, key_ids,
                                                        source_language_id=self.seeded.de.id)
        await self.queue.join()

        result = self.queue.results[0]
        self.assertTrue(result.is_noop)
        self.assertEqual(result.states[-1], DispatchState.UNLOCKING)
        self.assertEqual(sorted(result.unlocked_key_ids), sorted(key_ids))
        self.assertEqual(self.invoker.calls, [])

    async def test_no_target_languages_is_a_noop(self):
        key_ids = await self.import_keys(1)

        await self.dispatcher.trigger_batch_translation(self.seeded.project_id, key_ids,
                                                        target_language_ids=[self.seeded.en.id])
        await self.queue.join()

        self.assertTrue(self.queue.results[0].is_noop)
        self.assertEqual(self.key_store.get_key(key_ids[0]).status, KeyStatus.ACTIVE)

    async def test_unknown_language_fails_before_locking(self):
        key_ids = await self.import_keys(1)

        with self.assertRaises(LanguageNotFoundError):
            await self.dispatcher.trigger_batch_translation(self.seeded.project_id, key_ids,
                                                            target_language_ids=["missing"])

        self.assertEqual(self.key_store.get_key(key_ids[0]).status, KeyStatus.ACTIVE)

    async def test_keys_locked_elsewhere_are_skipped(self):
        locked, free = await self.import_keys(2)
        await self.key_store.acquire_leases([locked], "another-chunk")

        chunks = await self.dispatcher.trigger_batch_translation(self.seeded.project_id, [locked, free])
        await self.queue.join()

        self.assertEqual(chunks[0].key_ids, (free,))

    async def test_deleted_keys_are_skipped(self):
        key_ids = await self.import_keys(2)
        await self.key_store.delete_keys([key_ids[0]])

        chunks = await self.dispatcher.trigger_batch_translation(self.seeded.project_id, key_ids)
        await self.queue.join()

        self.assertEqual(chunks[0].key_ids, (key_ids[1],))


class TestProcessChunkFailures(DispatcherTestCase):
    async def test_merge_failure_still_unlocks(self):
        key_ids = await self.import_keys(3)
        chunk = DispatchChunk(chunk_id="chunk-1", project_id=self.seeded.project_id, key_ids=tuple(key_ids))

        with patch.object(self.key_store, "merge_translations", AsyncMock(side_effect=RuntimeError("disk full"))):
            with self.assertRaises(RuntimeError):
                await self.dispatcher.process_chunk(chunk)

        self.assertTrue(all(self.key_store.get_key(k).status is KeyStatus.ACTIVE for k in key_ids))

    async def test_worker_survives_a_failing_chunk(self):
        good_key, bad_key = await self.import_keys(2)
        good = DispatchChunk(chunk_id="good", project_id=self.seeded.project_id, key_ids=(good_key,))
        bad = DispatchChunk(chunk_id="bad", project_id="missing-project", key_ids=(bad_key,))

        self.queue.enqueue(bad)
        self.queue.enqueue(good)
        await self.queue.join()

        self.assertEqual([result.chunk_id for result in self.queue.results], ["good"])
        self.assertIn(self.seeded.fr.id, self.key_store.get_key(good_key).values)
        self.assertEqual(self.key_store.get_key(bad_key).status, KeyStatus.ACTIVE)


class TestSplitIntoChunks:
    def test_preserves_order_and_drops_duplicates(self):
        assert split_into_chunks(["a", "b", "a", "c", "d"], 2) == [["a", "b"], ["c", "d"]]

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            split_into_chunks(["a"], 0)


if __name__ == '__main__':
    unittest.main()
