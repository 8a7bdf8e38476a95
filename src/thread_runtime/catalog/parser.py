"""Catalog loading.

Two on-disk shapes are accepted:

* the legacy shape, ``{"providers": [{"id", "name", "models": [...]}]}`` where
  every model declares its reasoning budgets explicitly;
* the OpenRouter export shape, ``{"<provider-id>": [<openrouter model>, ...]}``
  where budgets are inferred from ``supported_parameters``.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any

from loguru import logger

from thread_runtime.catalog.models import ContextLimits, ModelEntry, Pricing, ProviderEntry

REASONING_BUDGETS: tuple[str, ...] = ("none", "low", "medium", "high")

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "models.catalog.json"

_REASONING_PARAMETERS = {"reasoning", "include_reasoning", "reasoning_effort"}

# Entries whose output window is effectively the whole context are treated as
# ambiguous and get a reserved fraction instead.
_OUTPUT_WINDOW_SIMILARITY_THRESHOLD = 0.9
_OUTPUT_WINDOW_FALLBACK_RATIO = 0.3


def load_catalog_file(path: str | Path | None = None) -> list[ProviderEntry]:
    catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
    with open(catalog_path, encoding="utf-8") as f:
        data = json.load(f)
    providers = parse_catalog(data)
    logger.debug(
        f"Loaded model catalog from {catalog_path}: "
        f"{len(providers)} providers, {sum(len(p.models) for p in providers)} models"
    )
    return providers


def parse_catalog(data: Any) -> list[ProviderEntry]:
    if isinstance(data, dict) and isinstance(data.get("providers"), list):
        return _parse_legacy_catalog(data["providers"])
    if isinstance(data, dict):
        return _parse_openrouter_catalog(data)
    raise ValueError("Model catalog must be a JSON object")


def _require_str(obj: dict, key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{where}: '{key}' must be a non-empty string")
    return value


def _parse_legacy_catalog(raw_providers: list) -> list[ProviderEntry]:
    if not raw_providers:
        raise ValueError("Model catalog has no providers")

    providers: list[ProviderEntry] = []
    for raw_provider in raw_providers:
        provider_id = _require_str(raw_provider, "id", "provider")
        raw_models = raw_provider.get("models") or []
        if not raw_models:
            raise ValueError(f"provider {provider_id}: no models")

        models: list[ModelEntry] = []
        for raw in raw_models:
            where = f"model {raw.get('id', '?')}"
            reasoning = raw.get("reasoning") or {}
            budgets = tuple(reasoning.get("budgets") or ())
            default_budget = reasoning.get("defaultValue")
            if not budgets or any(b not in REASONING_BUDGETS for b in budgets):
                raise ValueError(f"{where}: invalid reasoning budgets {budgets!r}")
            if default_budget not in budgets:
                raise ValueError(f"{where}: reasoning.defaultValue must be one of reasoning.budgets")

            limits = raw.get("contextLimits") or {}
            pricing = raw.get("pricing") or {}
            models.append(
                ModelEntry(
                    id=_require_str(raw, "id", where),
                    name=_require_str(raw, "name", where),
                    provider_id=_require_str(raw, "providerId", where),
                    runtime_provider=_require_str(raw, "runtimeProvider", where),
                    budgets=budgets,
                    default_budget=default_budget,
                    supports_reasoning=any(b != "none" for b in budgets),
                    supports_tools=False,
                    context_limits=ContextLimits(
                        total=int(limits.get("total", 0)),
                        max_input=int(limits.get("maxInput", 0)),
                        max_output=int(limits.get("maxOutput", 0)),
                    ),
                    pricing=Pricing(
                        input_usd_per_million=pricing.get("inputUsdPerMillion"),
                        output_usd_per_million=pricing.get("outputUsdPerMillion"),
                    ),
                )
            )

        providers.append(
            ProviderEntry(
                id=provider_id,
                name=_require_str(raw_provider, "name", f"provider {provider_id}"),
                models=tuple(models),
            )
        )
    return providers


def _parse_openrouter_catalog(data: dict) -> list[ProviderEntry]:
    if not data:
        raise ValueError("Model catalog has no providers")

    providers: list[ProviderEntry] = []
    for provider_id, raw_models in data.items():
        if not isinstance(raw_models, list) or not raw_models:
            raise ValueError(f"provider {provider_id}: no models")

        models: list[ModelEntry] = []
        for raw in raw_models:
            where = f"model {raw.get('id', '?')}"
            parameters = {str(p).lower() for p in raw.get("supported_parameters") or []}
            reasoning = bool(parameters & _REASONING_PARAMETERS)
            models.append(
                ModelEntry(
                    id=_require_str(raw, "id", where),
                    name=_require_str(raw, "name", where),
                    provider_id=provider_id,
                    runtime_provider="openrouter",
                    budgets=REASONING_BUDGETS if reasoning else ("none",),
                    default_budget="medium" if reasoning else "none",
                    supports_reasoning=reasoning,
                    supports_tools="tools" in parameters,
                    context_limits=_openrouter_context_limits(raw, where),
                    pricing=Pricing(
                        input_usd_per_million=_to_usd_per_million((raw.get("pricing") or {}).get("prompt")),
                        output_usd_per_million=_to_usd_per_million((raw.get("pricing") or {}).get("completion")),
                    ),
                )
            )

        providers.append(
            ProviderEntry(
                id=provider_id,
                name=_infer_provider_name(provider_id, models[0].name),
                models=tuple(models),
            )
        )
    return providers


def _openrouter_context_limits(raw: dict, where: str) -> ContextLimits:
    context_length = raw.get("context_length")
    if not isinstance(context_length, int) or context_length <= 0:
        raise ValueError(f"{where}: 'context_length' must be a positive integer")

    top = raw.get("top_provider") or {}
    provider_length = top.get("context_length")
    total = provider_length if isinstance(provider_length, int) and provider_length > 0 else context_length

    reported_max_output = top.get("max_completion_tokens")
    if isinstance(reported_max_output, int) and reported_max_output > 0:
        max_output = min(total, reported_max_output)
    else:
        max_output = total

    if max_output / total >= _OUTPUT_WINDOW_SIMILARITY_THRESHOLD:
        max_output = max(1, math.floor(total * _OUTPUT_WINDOW_FALLBACK_RATIO))

    return ContextLimits(total=total, max_input=max(0, total - max_output), max_output=max_output)


def _to_usd_per_million(value: object) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or parsed < 0:
        return None
    return parsed * 1_000_000


def _infer_provider_name(provider_id: str, model_name: str) -> str:
    first_segment = model_name.split(":")[0].strip()
    if first_segment:
        return first_segment
    return " ".join(part.capitalize() for part in provider_id.replace("_", "-").split("-") if part)
