from thread_runtime.catalog.catalog import ModelCatalog
from thread_runtime.catalog.models import ContextLimits, ModelEntry, Pricing, ProviderEntry
from thread_runtime.catalog.parser import REASONING_BUDGETS, parse_catalog
from thread_runtime.catalog.pricing import CatalogPricingCalculator
from thread_runtime.catalog.selection import (
    ModelSelection,
    ModelSelectionResolver,
    is_same_model_selection,
    parse_model_selection,
)

__all__ = [
    "REASONING_BUDGETS",
    "CatalogPricingCalculator",
    "ContextLimits",
    "ModelCatalog",
    "ModelEntry",
    "ModelSelection",
    "ModelSelectionResolver",
    "Pricing",
    "ProviderEntry",
    "is_same_model_selection",
    "parse_catalog",
    "parse_model_selection",
]
