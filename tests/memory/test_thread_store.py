from tests.memory.base import SELECTION, MemoryStoreTestCase, text_message
from thread_runtime.catalog import ModelSelection
from thread_runtime.models import ThreadUsage


class ThreadStoreTests(MemoryStoreTestCase):
    def test_create_thread_defaults_title_and_zero_usage(self) -> None:
        thread = self._threads.create_thread("user-1", SELECTION, title="   ")
        self.assertEqual("New chat", thread.title)
        self.assertEqual(ThreadUsage(), thread.usage)
        self.assertEqual((), thread.history)
        self.assertIsNone(thread.deleted_at)

    def test_create_thread_rejects_empty_selection(self) -> None:
        with self.assertRaises(ValueError):
            self._threads.create_thread("user-1", ModelSelection.empty())

    def test_append_assigns_increasing_ordinals(self) -> None:
        thread_id = self._thread_with_messages(4)
        thread = self._threads.get_thread(thread_id)
        self.assertEqual([1, 2, 3, 4], [r.ordinal for r in thread.live_history()])
        self.assertEqual(["m0", "m1", "m2", "m3"], [r.message_id for r in thread.live_history()])

    def test_upsert_existing_id_keeps_ordinal_and_bumps_version(self) -> None:
        thread_id = self._thread_with_messages(3)
        before = self._threads.get_thread(thread_id).find_live("m1")

        thread = self._threads.upsert_message(
            thread_id,
            text_message("m1", "assistant", "rewritten"),
            model_selection=SELECTION,
        )

        after = thread.find_live("m1")
        self.assertEqual(before.id, after.id)
        self.assertEqual(before.ordinal, after.ordinal)
        self.assertEqual(before.version + 1, after.version)
        self.assertEqual("rewritten", after.message["parts"][0]["text"])
        self.assertEqual(3, len(thread.live_history()))

    def test_upsert_overwrites_usage_instead_of_adding(self) -> None:
        thread_id = self._thread_with_messages(2)
        self._threads.upsert_message(
            thread_id,
            text_message("m1", "assistant", "first"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=10, output_tokens=5, total_cost_usd=0.5),
        )
        thread = self._threads.upsert_message(
            thread_id,
            text_message("m1", "assistant", "second"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=12, output_tokens=5, total_cost_usd=0.25),
        )
        self.assertEqual(12, thread.find_live("m1").usage.input_tokens)
        self.assertEqual(12, thread.usage.input_tokens)
        self.assertEqual(5, thread.usage.output_tokens)
        self.assertAlmostEqual(0.25, thread.usage.total_cost_usd)

    def test_upsert_without_usage_keeps_existing_usage(self) -> None:
        thread_id = self._thread_with_messages(2)
        self._threads.upsert_message(
            thread_id,
            text_message("m1", "assistant", "first"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=7, output_tokens=3, total_cost_usd=0.1),
        )
        thread = self._threads.upsert_message(
            thread_id,
            text_message("m1", "assistant", "edited"),
            model_selection=SELECTION,
        )
        self.assertEqual(7, thread.find_live("m1").usage.input_tokens)

    def test_usage_cost_is_priced_from_catalog_when_missing(self) -> None:
        thread_id = self._thread_with_messages(1)
        thread = self._threads.upsert_message(
            thread_id,
            text_message("a1", "assistant", "priced"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=1_000_000, output_tokens=0),
        )
        self.assertAlmostEqual(0.25, thread.find_live("a1").usage.total_cost_usd)

    def test_thread_usage_sums_live_records(self) -> None:
        thread_id = self._thread_with_messages(1)
        self._threads.upsert_message(
            thread_id,
            text_message("a1", "assistant", "one"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=10, output_tokens=5, total_duration_ms=100, total_cost_usd=0.1),
        )
        thread = self._threads.upsert_message(
            thread_id,
            text_message("a2", "assistant", "two"),
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=12, output_tokens=5, total_duration_ms=50, total_cost_usd=0.2),
        )
        self.assertEqual(22, thread.usage.input_tokens)
        self.assertEqual(10, thread.usage.output_tokens)
        self.assertEqual(150, thread.usage.total_duration_ms)

    def test_edit_and_truncate_keeps_prefix(self) -> None:
        thread_id = self._thread_with_messages(4)
        thread = self._threads.edit_and_truncate(thread_id, "m0", text_message("m0", "user", "edited"))
        # m0 is ordinal 1; nothing above it survives.
        self.assertEqual([1], [r.ordinal for r in thread.live_history()])
        self.assertEqual("edited", thread.live_history()[0].message["parts"][0]["text"])

    def test_edit_second_user_message_truncates_after_it(self) -> None:
        thread_id = self._thread_with_messages(4)
        thread = self._threads.edit_and_truncate(thread_id, "m2", text_message("m2", "user", "edited"))
        self.assertEqual([1, 2, 3], [r.ordinal for r in thread.live_history()])
        self.assertEqual(["m0", "m1", "m2"], [r.message_id for r in thread.live_history()])

    def test_edit_rejects_assistant_message(self) -> None:
        thread_id = self._thread_with_messages(2)
        with self.assertRaises(LookupError):
            self._threads.edit_and_truncate(thread_id, "m1", text_message("m1", "user", "nope"))

    def test_truncated_ordinals_are_never_reused(self) -> None:
        thread_id = self._thread_with_messages(4)
        self._threads.truncate_after(thread_id, 2)
        thread = self._threads.upsert_message(thread_id, text_message("m9", "user", "again"), model_selection=SELECTION)
        self.assertEqual([1, 2, 5], [r.ordinal for r in thread.live_history()])

    def test_soft_delete_marks_thread_and_messages(self) -> None:
        thread_id = self._thread_with_messages(3)
        self.assertTrue(self._threads.soft_delete_thread(thread_id))
        self.assertTrue(self._threads.soft_delete_thread(thread_id))

        thread = self._threads.get_thread(thread_id)
        self.assertIsNotNone(thread.deleted_at)
        self.assertEqual(3, len(thread.history))
        self.assertEqual([], thread.live_history())
        self.assertEqual([1, 2, 3], [r.ordinal for r in thread.history])

    def test_list_threads_filters_by_user_and_deleted(self) -> None:
        keep = self._thread_with_messages(1, user_id="user-1")
        gone = self._thread_with_messages(1, user_id="user-1")
        self._thread_with_messages(1, user_id="user-2")
        self._threads.soft_delete_thread(gone)

        ids = [t.id for t in self._threads.list_threads(user_id="user-1")]
        self.assertEqual([keep], ids)
        self.assertEqual(2, len(self._threads.list_threads(user_id="user-1", include_deleted=True)))

    def test_update_thread_settings(self) -> None:
        thread_id = self._thread_with_messages(1)
        other = ModelSelection("anthropic", "anthropic/claude-3.5-haiku", "none", "openrouter")
        thread = self._threads.update_thread_settings(thread_id, title="Renamed", model_selection=other)
        self.assertEqual("Renamed", thread.title)
        self.assertEqual(other, thread.model_selection)

    def test_missing_thread_returns_none(self) -> None:
        self.assertIsNone(self._threads.get_thread("missing"))
        self.assertIsNone(self._threads.upsert_message("missing", text_message("x", "user", "hi"), model_selection=SELECTION))
        self.assertFalse(self._threads.soft_delete_thread("missing"))

    def test_mutations_emit_audit_events(self) -> None:
        thread_id = self._thread_with_messages(2)
        self._threads.truncate_after(thread_id, 1)
        types = [e["type"] for e in self._events.list_events(thread_id)]
        self.assertEqual(["thread.created", "message.upserted", "message.upserted", "thread.truncated"], types)

    def test_invalid_message_leaves_store_untouched(self) -> None:
        thread_id = self._thread_with_messages(1)
        with self.assertRaises(ValueError):
            self._threads.upsert_message(thread_id, {"id": "", "role": "user", "parts": []}, model_selection=SELECTION)
        self.assertEqual(1, len(self._threads.get_thread(thread_id).live_history()))
