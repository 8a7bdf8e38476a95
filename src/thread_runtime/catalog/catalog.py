from __future__ import annotations

from pathlib import Path

from thread_runtime.catalog.models import ModelEntry, ProviderEntry
from thread_runtime.catalog.parser import load_catalog_file


class ModelCatalog:
    """Read-only lookup table over the providers and models of a catalog."""

    def __init__(self, providers: list[ProviderEntry]):
        self._providers = tuple(providers)
        self._by_key: dict[tuple[str, str], ModelEntry] = {}
        self._by_model_id: dict[str, ModelEntry] = {}
        for provider in self._providers:
            for model in provider.models:
                self._by_key[(provider.id, model.id)] = model
                self._by_model_id.setdefault(model.id, model)

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> ModelCatalog:
        return cls(load_catalog_file(path))

    @property
    def providers(self) -> tuple[ProviderEntry, ...]:
        return self._providers

    def is_empty(self) -> bool:
        return not self._by_key

    def get_provider(self, provider_id: str) -> ProviderEntry | None:
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None

    def find_model(self, provider_id: str | None, model_id: str | None) -> ModelEntry | None:
        """Look a model up by provider and id.

        Without a provider id the first model with that id (catalog order)
        is returned.
        """
        if not model_id:
            return None
        if provider_id:
            return self._by_key.get((provider_id, model_id))
        return self._by_model_id.get(model_id)

    def iter_models(self):
        for provider in self._providers:
            yield from provider.models
