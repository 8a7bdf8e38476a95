import unittest

from thread_runtime.models import MessageRecord, ThreadRecord, ThreadUsage
from thread_runtime.catalog import ModelSelection
from thread_runtime.usage import UsageAggregator, aggregate_thread_usage, resolve_message_cost

SELECTION = ModelSelection("acme", "gpt-x", "low", "openrouter")


def record(message_id: str, ordinal: int, usage: ThreadUsage, *, deleted: bool = False) -> MessageRecord:
    return MessageRecord(
        id=f"r-{message_id}",
        ordinal=ordinal,
        version=1,
        message={"id": message_id, "role": "assistant", "parts": []},
        usage=usage,
        model_selection=SELECTION,
        created_at="t",
        updated_at="t",
        deleted_at="t" if deleted else None,
    )


class _FixedPricing:
    def calculate_cost(self, *, model_id: str, input_tokens: int, output_tokens: int) -> float:
        return 0.01 * (input_tokens + output_tokens)


class UsageAggregatorTests(unittest.TestCase):
    def test_record_overwrites_and_rollup_sums(self) -> None:
        aggregator = UsageAggregator()
        aggregator.record("a", ThreadUsage(input_tokens=1, output_tokens=1))
        aggregator.record("a", ThreadUsage(input_tokens=10, output_tokens=5))
        aggregator.record("b", ThreadUsage(input_tokens=12, output_tokens=5))

        total = aggregator.rollup(["a", "b"])
        self.assertEqual(22, total.input_tokens)
        self.assertEqual(10, total.output_tokens)

    def test_rollup_of_thread_skips_deleted_records(self) -> None:
        thread = ThreadRecord(
            id="t",
            user_id="u",
            title="t",
            model_selection=SELECTION,
            created_at="t",
            updated_at="t",
            history=(
                record("a", 1, ThreadUsage(input_tokens=10, output_tokens=5, total_duration_ms=30)),
                record("b", 2, ThreadUsage(input_tokens=99, output_tokens=99), deleted=True),
                record("c", 3, ThreadUsage(input_tokens=12, output_tokens=5, total_duration_ms=20)),
            ),
        )
        aggregator = UsageAggregator()
        aggregator.hydrate(thread)

        total = aggregator.rollup(thread)
        self.assertEqual((22, 10, 50), (total.input_tokens, total.output_tokens, total.total_duration_ms))
        self.assertEqual(total, aggregate_thread_usage(thread.history))
        self.assertIsNone(aggregator.get("b"))

    def test_forget_removes_usage(self) -> None:
        aggregator = UsageAggregator()
        aggregator.record("a", ThreadUsage(input_tokens=3))
        aggregator.forget("a")
        self.assertEqual(ThreadUsage(), aggregator.rollup(["a"]))

    def test_negative_usage_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ThreadUsage(input_tokens=-1)


class MessageCostTests(unittest.TestCase):
    def test_explicit_cost_wins(self) -> None:
        cost = resolve_message_cost(input_tokens=10, output_tokens=10, explicit_cost_usd=1.5, pricing_calculator=_FixedPricing())
        self.assertEqual(1.5, cost)

    def test_calculator_then_zero(self) -> None:
        self.assertAlmostEqual(0.2, resolve_message_cost(input_tokens=10, output_tokens=10, pricing_calculator=_FixedPricing()))
        self.assertEqual(0.0, resolve_message_cost(input_tokens=10, output_tokens=10))
