from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from thread_runtime.api import HttpPersistenceGateway, LocalPersistenceGateway, PersistenceGateway, ThreadsApi
from thread_runtime.app_config import AppConfig, RuntimeEnv
from thread_runtime.catalog import CatalogPricingCalculator, ModelCatalog, ModelSelectionResolver
from thread_runtime.logging_config import setup_logging
from thread_runtime.memory import EventEmitter, MemoryStore, ThreadStore
from thread_runtime.session import ThreadSessionController
from thread_runtime.stream import HttpChatTransport


@dataclass
class AppRuntime:
    controller: ThreadSessionController
    resolver: ModelSelectionResolver
    gateway: PersistenceGateway
    transport: HttpChatTransport
    memory_store: MemoryStore | None
    user_id: str | None
    log_descriptions: list[str]

    async def aclose(self) -> None:
        await self.controller.stop()
        await self.transport.aclose()
        if isinstance(self.gateway, HttpPersistenceGateway):
            await self.gateway.aclose()
        if self.memory_store is not None:
            self.memory_store.close()


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    catalog = ModelCatalog.from_file(app.catalog_path)
    resolver = ModelSelectionResolver(catalog, preferred_models=app.default_models)
    logger.debug(f"Default model selection: {resolver.default_selection().label}")

    memory_store: MemoryStore | None = None
    gateway: PersistenceGateway
    if app.persistence_mode == "remote":
        gateway = HttpPersistenceGateway(
            app.api_base_url,
            env.user_id,
            api_token=env.api_token,
            timeout=app.request_timeout_seconds,
            retries=app.request_retries,
        )
    else:
        db_path = Path(app.memory_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        memory_store = MemoryStore(str(db_path))
        thread_store = ThreadStore(
            memory_store,
            EventEmitter(memory_store),
            pricing_calculator=CatalogPricingCalculator(catalog),
        )
        api = ThreadsApi(thread_store, resolver, compaction_enabled=app.compaction_enabled)
        gateway = LocalPersistenceGateway(api, env.user_id)

    transport = HttpChatTransport(
        app.api_base_url,
        app.chat_endpoint,
        user_id=env.user_id,
        api_token=env.api_token,
        timeout=app.request_timeout_seconds,
        retries=app.request_retries,
    )

    controller = ThreadSessionController(gateway, transport, resolver)

    return AppRuntime(
        controller=controller,
        resolver=resolver,
        gateway=gateway,
        transport=transport,
        memory_store=memory_store,
        user_id=env.user_id,
        log_descriptions=log_descriptions,
    )
