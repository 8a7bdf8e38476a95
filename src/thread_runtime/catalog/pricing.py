from __future__ import annotations

from thread_runtime.catalog.catalog import ModelCatalog


class CatalogPricingCalculator:
    """Estimates message cost from the per-million token prices in the catalog."""

    def __init__(self, catalog: ModelCatalog):
        self._catalog = catalog

    def calculate_cost(self, *, model_id: str, input_tokens: int, output_tokens: int) -> float:
        model = self._catalog.find_model(None, model_id)
        if model is None:
            return 0.0
        input_price = model.pricing.input_usd_per_million or 0.0
        output_price = model.pricing.output_usd_per_million or 0.0
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000
