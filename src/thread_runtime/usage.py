from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from thread_runtime.models import MessageRecord, ThreadRecord, ThreadUsage


class PricingCalculator(Protocol):
    def calculate_cost(self, *, model_id: str, input_tokens: int, output_tokens: int) -> float: ...


def empty_usage() -> ThreadUsage:
    return ThreadUsage()


def resolve_message_cost(
    *,
    input_tokens: int,
    output_tokens: int,
    explicit_cost_usd: float | None = None,
    model_id: str | None = None,
    pricing_calculator: PricingCalculator | None = None,
) -> float:
    """Explicit cost wins, then the pricing calculator, otherwise zero."""
    if explicit_cost_usd is not None:
        return float(explicit_cost_usd)
    if pricing_calculator is None:
        return 0.0
    return pricing_calculator.calculate_cost(
        model_id=model_id or "unknown",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def sum_usage(usages: Iterable[ThreadUsage]) -> ThreadUsage:
    input_tokens = output_tokens = duration = 0
    cost = 0.0
    for usage in usages:
        input_tokens += usage.input_tokens
        output_tokens += usage.output_tokens
        duration += usage.total_duration_ms
        cost += usage.total_cost_usd
    return ThreadUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_duration_ms=duration,
        total_cost_usd=cost,
    )


def aggregate_thread_usage(history: Iterable[MessageRecord]) -> ThreadUsage:
    return sum_usage(record.usage for record in history if record.is_live)


class UsageAggregator:
    """Per-message usage keyed by message id, with thread rollups.

    Recording the same id twice overwrites: a rerun or an edit replaces the
    usage of the turn it supersedes.
    """

    def __init__(self) -> None:
        self._by_message_id: dict[str, ThreadUsage] = {}

    def record(self, message_id: str, usage: ThreadUsage) -> None:
        self._by_message_id[message_id] = usage

    def get(self, message_id: str) -> ThreadUsage | None:
        return self._by_message_id.get(message_id)

    def forget(self, message_id: str) -> None:
        self._by_message_id.pop(message_id, None)

    def clear(self) -> None:
        self._by_message_id.clear()

    def hydrate(self, thread: ThreadRecord) -> None:
        self._by_message_id = {record.message_id: record.usage for record in thread.live_history()}

    def rollup(self, thread: ThreadRecord | Iterable[str]) -> ThreadUsage:
        """Sum usage over the live messages of ``thread`` (or an iterable of message ids)."""
        if isinstance(thread, ThreadRecord):
            message_ids: Iterable[str] = (r.message_id for r in thread.history if r.is_live)
        else:
            message_ids = thread
        return sum_usage(
            usage for usage in (self._by_message_id.get(mid) for mid in message_ids) if usage is not None
        )

    def as_dict(self) -> dict[str, ThreadUsage]:
        return dict(self._by_message_id)
