import asyncio
import json

import httpx

from tests.memory.base import MemoryStoreTestCase, text_message
from thread_runtime.api import HttpPersistenceGateway, LocalPersistenceGateway, ThreadsApi
from thread_runtime.errors import InvalidRequest, MessageNotFound, PersistenceFailure, ThreadNotFound, Unauthorized
from thread_runtime.models import ThreadUsage


class _Routed:
    """Serves a ThreadsApi over httpx.MockTransport and counts calls."""

    def __init__(self, api: ThreadsApi):
        self._api = api
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        body = json.loads(request.content) if request.content else None
        response = self._api.handle(
            request.method,
            request.url.raw_path.decode("ascii"),
            request.headers.get("X-User-Id"),
            body,
            query=dict(request.url.params),
        )
        return httpx.Response(response.status, json=response.body)


class HttpPersistenceGatewayTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._routed = _Routed(ThreadsApi(self._threads, self._resolver))

    def _gateway(self, user_id: str | None = "user-1", handler=None, **kwargs) -> HttpPersistenceGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler or self._routed))
        return HttpPersistenceGateway("http://store.test", user_id, client=client, max_retry_wait=0, **kwargs)

    def test_thread_round_trip(self) -> None:
        gateway = self._gateway()

        async def scenario():
            thread = await gateway.create_thread(title="Remote")
            await gateway.upsert_message(thread.id, text_message("u1", "user", "hello"))
            thread = await gateway.upsert_message(
                thread.id,
                text_message("a1", "assistant", "hi"),
                usage=ThreadUsage(input_tokens=3, output_tokens=2, total_cost_usd=0.01),
            )
            listed = await gateway.list_threads(limit=5)
            loaded = await gateway.get_thread(thread.id)
            return thread, listed, loaded

        thread, listed, loaded = asyncio.run(scenario())
        self.assertEqual("Remote", thread.title)
        self.assertEqual([1, 2], [r.ordinal for r in loaded.live_history()])
        self.assertEqual(3, loaded.usage.input_tokens)
        self.assertEqual([thread.id], [t.id for t in listed])
        self.assertEqual((), listed[0].history)

    def test_edit_message_truncates(self) -> None:
        gateway = self._gateway()

        async def scenario():
            thread = await gateway.create_thread()
            await gateway.upsert_message(thread.id, text_message("u1", "user", "one"))
            await gateway.upsert_message(thread.id, text_message("a1", "assistant", "two"))
            return await gateway.edit_message(thread.id, "u1", text_message("u1", "user", "uno"))

        thread = asyncio.run(scenario())
        self.assertEqual(["u1"], [r.message_id for r in thread.live_history()])

    def test_ids_with_reserved_characters_survive_the_path(self) -> None:
        gateway = self._gateway()
        odd_id = "q/1?x#y"

        async def scenario():
            thread = await gateway.create_thread()
            await gateway.upsert_message(thread.id, text_message(odd_id, "user", "one"))
            await gateway.upsert_message(thread.id, text_message("a1", "assistant", "two"))
            return await gateway.edit_message(thread.id, odd_id, text_message(odd_id, "user", "uno"))

        thread = asyncio.run(scenario())
        self.assertEqual([odd_id], [r.message_id for r in thread.live_history()])

    def test_status_codes_map_to_errors(self) -> None:
        gateway = self._gateway()

        async def scenario():
            thread = await gateway.create_thread()
            with self.assertRaises(ThreadNotFound):
                await gateway.get_thread("missing")
            with self.assertRaises(MessageNotFound):
                await gateway.edit_message(thread.id, "missing", text_message("missing", "user", "x"))
            with self.assertRaises(InvalidRequest):
                await gateway.upsert_message(thread.id, {"id": "x", "role": "robot", "parts": []})
            await gateway.delete_thread(thread.id)
            with self.assertRaises(ThreadNotFound):
                await gateway.get_thread(thread.id)

        asyncio.run(scenario())

    def test_missing_identity_is_unauthorized(self) -> None:
        gateway = self._gateway(user_id=None)
        with self.assertRaises(Unauthorized):
            asyncio.run(gateway.list_threads())

    def test_client_errors_are_not_retried(self) -> None:
        gateway = self._gateway(retries=3)
        with self.assertRaises(ThreadNotFound):
            asyncio.run(gateway.get_thread("missing"))
        self.assertEqual(1, self._routed.calls)

    def test_server_errors_become_persistence_failures(self) -> None:
        gateway = self._gateway(handler=lambda request: httpx.Response(503, text="maintenance"))
        with self.assertRaises(PersistenceFailure) as ctx:
            asyncio.run(gateway.get_thread("t"))
        self.assertIn("maintenance", str(ctx.exception))

    def test_transport_errors_are_retried(self) -> None:
        attempts = {"count": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return self._routed(request)

        gateway = self._gateway(handler=flaky, retries=3)
        threads = asyncio.run(gateway.list_threads())
        self.assertEqual([], threads)
        self.assertEqual(2, attempts["count"])

    def test_exhausted_transport_retries_raise_persistence_failure(self) -> None:
        def down(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = self._gateway(handler=down, retries=2)
        with self.assertRaises(PersistenceFailure):
            asyncio.run(gateway.list_threads())


class LocalPersistenceGatewayTests(MemoryStoreTestCase):
    def test_local_gateway_maps_errors_like_http(self) -> None:
        gateway = LocalPersistenceGateway(ThreadsApi(self._threads, self._resolver), "user-1")

        async def scenario():
            thread = await gateway.create_thread(initial_user_message=text_message("u1", "user", "pending question"))
            with self.assertRaises(MessageNotFound):
                await gateway.edit_message(thread.id, "ghost", text_message("ghost", "user", "x"))
            other = LocalPersistenceGateway(ThreadsApi(self._threads, self._resolver), "user-2")
            with self.assertRaises(ThreadNotFound):
                await other.get_thread(thread.id)
            return thread

        thread = asyncio.run(scenario())
        self.assertEqual("pending question", thread.title)
        self.assertTrue(thread.live_history()[0].message["metadata"]["pending"])
