from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from thread_runtime.catalog.catalog import ModelCatalog
from thread_runtime.catalog.models import ModelEntry
from thread_runtime.catalog.parser import REASONING_BUDGETS

DEFAULT_RUNTIME_PROVIDER = "openrouter"


@dataclass(frozen=True)
class ModelSelection:
    provider_id: str
    model_id: str
    reasoning_budget: str
    runtime_provider: str

    @classmethod
    def empty(cls) -> ModelSelection:
        """Placeholder for a selection that has not been resolved yet."""
        return cls(provider_id="", model_id="", reasoning_budget="", runtime_provider="")

    @property
    def is_empty(self) -> bool:
        return not (self.provider_id and self.model_id and self.reasoning_budget and self.runtime_provider)

    def to_dict(self) -> dict[str, str]:
        return {
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "reasoningBudget": self.reasoning_budget,
            "runtimeProvider": self.runtime_provider,
        }

    @property
    def label(self) -> str:
        return f"{self.provider_id}/{self.model_id} ({self.reasoning_budget})"


def parse_model_selection(value: Any) -> ModelSelection | None:
    """Strictly parse a loosely-typed selection; ``None`` when anything required is missing."""
    if isinstance(value, ModelSelection):
        return None if value.is_empty else value
    if not isinstance(value, Mapping):
        return None

    provider_id = value.get("providerId")
    model_id = value.get("modelId")
    budget = value.get("reasoningBudget")
    runtime_provider = value.get("runtimeProvider", DEFAULT_RUNTIME_PROVIDER)

    if not isinstance(provider_id, str) or not provider_id:
        return None
    if not isinstance(model_id, str) or not model_id:
        return None
    if budget not in REASONING_BUDGETS:
        return None
    if not isinstance(runtime_provider, str) or not runtime_provider:
        return None

    return ModelSelection(
        provider_id=provider_id,
        model_id=model_id,
        reasoning_budget=budget,
        runtime_provider=runtime_provider,
    )


def is_same_model_selection(a: ModelSelection | None, b: ModelSelection | None) -> bool:
    if a is None or b is None:
        return False
    return a == b


def _candidate_fields(candidate: ModelSelection | Mapping[str, Any] | None) -> tuple[str | None, str | None, str | None]:
    if candidate is None:
        return None, None, None
    if isinstance(candidate, ModelSelection):
        return candidate.provider_id or None, candidate.model_id or None, candidate.reasoning_budget or None
    if isinstance(candidate, Mapping):
        provider_id = candidate.get("providerId")
        model_id = candidate.get("modelId")
        budget = candidate.get("reasoningBudget")
        return (
            provider_id if isinstance(provider_id, str) and provider_id else None,
            model_id if isinstance(model_id, str) and model_id else None,
            budget if isinstance(budget, str) and budget else None,
        )
    return None, None, None


class ModelSelectionResolver:
    """Decides which model, provider and reasoning budget a turn runs with."""

    def __init__(self, catalog: ModelCatalog, *, preferred_models: list[str] | None = None):
        if catalog.is_empty():
            raise ValueError("Model catalog is empty")
        self._catalog = catalog
        self._default = self._build_default(preferred_models or [])

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    def default_selection(self) -> ModelSelection:
        return self._default

    def parse(self, value: Any) -> ModelSelection | None:
        return parse_model_selection(value)

    def resolve(
        self,
        explicit_request: ModelSelection | Mapping[str, Any] | None = None,
        thread_default: ModelSelection | Mapping[str, Any] | None = None,
    ) -> ModelSelection:
        """Walk request -> thread default -> process default and take the first catalog hit.

        The reasoning budget of the chosen candidate is remapped to the
        model's default whenever the model does not support it.
        """
        for level, candidate in (("request", explicit_request), ("thread", thread_default), ("default", self._default)):
            provider_id, model_id, budget = _candidate_fields(candidate)
            if model_id is None:
                continue
            model = self._catalog.find_model(provider_id, model_id)
            if model is None:
                logger.debug(f"Model selection ({level}) {provider_id}/{model_id} not in catalog, falling back")
                continue
            return self._select(model, budget)

        return self._default

    def resolve_client(
        self,
        selection: ModelSelection | Mapping[str, Any] | None,
        default: ModelSelection,
    ) -> ModelSelection:
        """Fill missing fields from ``default``; unknown models fall back to the default model."""
        provider_id, model_id, budget = _candidate_fields(selection)
        model = self._catalog.find_model(provider_id or default.provider_id, model_id or default.model_id)
        if model is None:
            model = self._catalog.find_model(default.provider_id, default.model_id)
        if model is None:
            return default
        return self._select(model, budget)

    def with_model(self, selection: ModelSelection | Mapping[str, Any]) -> ModelSelection:
        """Switch model: the budget always resets to the new model's default."""
        provider_id, model_id, _ = _candidate_fields(selection)
        model = self._catalog.find_model(provider_id, model_id)
        if model is None:
            return self.resolve(thread_default=selection)
        return self._select(model, None)

    def with_budget(self, selection: ModelSelection, budget: str) -> ModelSelection:
        model = self._catalog.find_model(selection.provider_id, selection.model_id)
        if model is None:
            return self.resolve(thread_default=selection)
        return self._select(model, budget)

    def _select(self, model: ModelEntry, requested_budget: str | None) -> ModelSelection:
        if requested_budget and requested_budget in model.budgets:
            budget = requested_budget
        else:
            if requested_budget:
                logger.debug(
                    f"Reasoning budget {requested_budget!r} unsupported by {model.id}, "
                    f"using {model.default_budget!r}"
                )
            budget = model.default_budget
        return ModelSelection(
            provider_id=model.provider_id,
            model_id=model.id,
            reasoning_budget=budget,
            runtime_provider=model.runtime_provider,
        )

    def _build_default(self, preferred_models: list[str]) -> ModelSelection:
        for model_id in preferred_models:
            provider_id = model_id.split("/")[0] if "/" in model_id else None
            model = self._catalog.find_model(provider_id, model_id) or self._catalog.find_model(None, model_id)
            if model is not None:
                return self._select(model, None)
        first = next(self._catalog.iter_models())
        return self._select(first, None)
