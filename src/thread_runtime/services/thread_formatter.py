from __future__ import annotations

from thread_runtime.catalog.selection import ModelSelection
from thread_runtime.messages import TOOL_PART_TYPE, message_text
from thread_runtime.models import ThreadRecord, ThreadUsage
from thread_runtime.session.controller import TranscriptSnapshot


class ThreadFormatter:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_chars: int = 80):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_chars = preview_chars

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def preview(self, text: str) -> str:
        flat = " ".join(text.split())
        if len(flat) <= self._preview_chars:
            return flat
        return flat[: self._preview_chars - 3] + "..."

    def format_selection(self, selection: ModelSelection) -> str:
        return f"{selection.provider_id}/{selection.model_id} (reasoning={selection.reasoning_budget}, via {selection.runtime_provider})"

    def format_thread_list_entry(self, thread: ThreadRecord, *, active_thread_id: str | None) -> str:
        marker = "*" if thread.id == active_thread_id else " "
        return (
            f"{self._line_prefix}{marker} {thread.title} [{self.short_id(thread.id)}] (id={thread.id}) "
            f"(model={thread.model_selection.model_id}, updated={thread.updated_at}, "
            f"tokens={thread.usage.input_tokens + thread.usage.output_tokens})"
        )

    def format_usage_lines(self, usage: ThreadUsage, *, title: str = "Thread usage") -> list[str]:
        return [
            f"{self._line_prefix}{title}:",
            f"{self._line_prefix}- Input tokens: {usage.input_tokens:,}",
            f"{self._line_prefix}- Output tokens: {usage.output_tokens:,}",
            f"{self._line_prefix}- Duration: {usage.total_duration_ms / 1000:.1f}s",
            f"{self._line_prefix}- Cost: ${usage.total_cost_usd:.6f}",
        ]

    def format_transcript_lines(self, snapshot: TranscriptSnapshot) -> list[str]:
        lines: list[str] = []
        for entry in snapshot.entries:
            ordinal = "?" if entry.ordinal is None else str(entry.ordinal)
            text = message_text(entry.message)
            tools = [p.get("toolName", "") for p in entry.message.get("parts", []) if p.get("type") == TOOL_PART_TYPE]
            summary = self.preview(text) if text else ""
            if tools:
                summary = f"{summary} [tools: {', '.join(tools)}]".strip()
            lines.append(
                f"{self._line_prefix}#{ordinal} {entry.role} [{self.short_id(entry.message_id)}] "
                f"(id={entry.message_id}) {summary}"
            )
            if entry.error:
                lines.append(f"{self._line_prefix}  error: {entry.error}")
        return lines
