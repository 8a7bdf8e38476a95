import unittest

from thread_runtime.catalog import ModelSelection
from thread_runtime.models import ThreadRecord, ThreadUsage
from thread_runtime.services.thread_formatter import ThreadFormatter
from thread_runtime.session import TranscriptEntry, TranscriptSnapshot

SELECTION = ModelSelection("openai", "openai/gpt-5-mini", "medium", "openrouter")


class ThreadFormatterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.formatter = ThreadFormatter(line_prefix="> ", short_id_len=4, preview_chars=12)

    def test_short_id_and_preview(self) -> None:
        self.assertEqual("abcd", self.formatter.short_id("abcdef"))
        self.assertEqual("abc", self.formatter.short_id("abc"))
        self.assertEqual("one two", self.formatter.preview("one\n  two"))
        self.assertEqual("a long li...", self.formatter.preview("a long line of text"))

    def test_thread_list_entry_marks_active_thread(self) -> None:
        thread = ThreadRecord(
            id="thread-1",
            user_id="user-1",
            title="Travel plans",
            model_selection=SELECTION,
            usage=ThreadUsage(input_tokens=100, output_tokens=20),
            created_at="2026-01-01T00:00:00+00:00",
            updated_at="2026-01-02T00:00:00+00:00",
        )

        active = self.formatter.format_thread_list_entry(thread, active_thread_id="thread-1")
        inactive = self.formatter.format_thread_list_entry(thread, active_thread_id=None)

        self.assertTrue(active.startswith("> * Travel plans [thre]"))
        self.assertIn("tokens=120", active)
        self.assertTrue(inactive.startswith(">   Travel plans"))

    def test_usage_lines(self) -> None:
        lines = self.formatter.format_usage_lines(
            ThreadUsage(input_tokens=12000, output_tokens=345, total_duration_ms=2500, total_cost_usd=0.0125)
        )
        self.assertEqual(
            [
                "> Thread usage:",
                "> - Input tokens: 12,000",
                "> - Output tokens: 345",
                "> - Duration: 2.5s",
                "> - Cost: $0.012500",
            ],
            lines,
        )

    def test_transcript_lines_show_tools_and_errors(self) -> None:
        snapshot = TranscriptSnapshot(
            thread_id="thread-1",
            title="t",
            status="error",
            entries=(
                TranscriptEntry({"id": "user-1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}, 1),
                TranscriptEntry(
                    {
                        "id": "asst-1",
                        "role": "assistant",
                        "parts": [{"type": "dynamic-tool", "toolName": "search", "toolCallId": "c1"}],
                    },
                    None,
                    error="boom",
                ),
            ),
            model_selection=SELECTION,
            usage=ThreadUsage(),
        )

        lines = self.formatter.format_transcript_lines(snapshot)

        self.assertEqual("> #1 user [user] (id=user-1) hi", lines[0])
        self.assertEqual("> #? assistant [asst] (id=asst-1) [tools: search]", lines[1])
        self.assertEqual(">   error: boom", lines[2])


if __name__ == "__main__":
    unittest.main()
