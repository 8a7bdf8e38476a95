from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ContextLimits:
    total: int = 0
    max_input: int = 0
    max_output: int = 0


@dataclass(frozen=True)
class Pricing:
    input_usd_per_million: float | None = None
    output_usd_per_million: float | None = None


@dataclass(frozen=True)
class ModelEntry:
    id: str
    name: str
    provider_id: str
    runtime_provider: str
    budgets: tuple[str, ...]
    default_budget: str
    supports_reasoning: bool = False
    supports_tools: bool = False
    context_limits: ContextLimits = field(default_factory=ContextLimits)
    pricing: Pricing = field(default_factory=Pricing)


@dataclass(frozen=True)
class ProviderEntry:
    id: str
    name: str
    models: tuple[ModelEntry, ...]
