from tests.memory.base import SELECTION, MemoryStoreTestCase, text_message
from thread_runtime.api import ThreadsApi


class ThreadsApiTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._api = ThreadsApi(self._threads, self._resolver)

    def _create(self, user_id: str = "user-1", **body) -> dict:
        response = self._api.create_thread(user_id, body)
        self.assertEqual(201, response.status)
        return response.body["thread"]

    def test_requests_without_identity_are_unauthorized(self) -> None:
        self.assertEqual(401, self._api.list_threads(None).status)
        self.assertEqual(401, self._api.create_thread("", {}).status)
        self.assertEqual(401, self._api.get_thread(None, "t").status)

    def test_create_uses_default_selection(self) -> None:
        thread = self._create()
        self.assertEqual(self._resolver.default_selection().to_dict(), thread["modelSelection"])
        self.assertEqual("New chat", thread["title"])

    def test_create_with_initial_message_marks_it_pending(self) -> None:
        thread = self._create(
            initialUserMessage=text_message("u1", "user", "What is the capital of France?"),
            modelSelection={"providerId": "openai", "modelId": "openai/gpt-4o-mini", "reasoningBudget": "high"},
        )
        self.assertEqual("What is the capital of France?", thread["title"])
        self.assertEqual("none", thread["modelSelection"]["reasoningBudget"])
        record = thread["history"][0]
        self.assertEqual(1, record["ordinal"])
        self.assertTrue(record["message"]["metadata"]["pending"])
        self.assertEqual(0, record["usage"]["inputTokens"])

    def test_create_rejects_bad_initial_message(self) -> None:
        self.assertEqual(400, self._api.create_thread("user-1", {"initialUserMessage": {"id": "x"}}).status)
        self.assertEqual(400, self._api.create_thread("user-1", {"modelSelection": "gpt"}).status)

    def test_other_users_cannot_see_thread(self) -> None:
        thread = self._create("owner")
        self.assertEqual(404, self._api.get_thread("intruder", thread["id"]).status)
        self.assertEqual(404, self._api.delete_thread("intruder", thread["id"]).status)
        self.assertEqual([], self._api.list_threads("intruder").body["threads"])

    def test_deleted_thread_is_not_found(self) -> None:
        thread = self._create()
        response = self._api.delete_thread("user-1", thread["id"])
        self.assertEqual((200, {"ok": True}), (response.status, response.body))
        self.assertEqual(404, self._api.get_thread("user-1", thread["id"]).status)
        self.assertEqual(404, self._api.delete_thread("user-1", thread["id"]).status)

    def test_patch_model_selection(self) -> None:
        thread = self._create()
        response = self._api.update_thread(
            "user-1",
            thread["id"],
            {"modelSelection": {"providerId": "anthropic", "modelId": "anthropic/claude-sonnet-4.5", "reasoningBudget": "high"}},
        )
        self.assertEqual(200, response.status)
        self.assertEqual("anthropic/claude-sonnet-4.5", response.body["thread"]["modelSelection"]["modelId"])

    def test_patch_rejects_malformed_selection(self) -> None:
        thread = self._create()
        self.assertEqual(400, self._api.update_thread("user-1", thread["id"], {"modelSelection": {"modelId": "x"}}).status)
        self.assertEqual(400, self._api.update_thread("user-1", thread["id"], {}).status)
        self.assertEqual(404, self._api.update_thread("user-1", "missing", {"modelSelection": SELECTION.to_dict()}).status)

    def test_post_message_upserts_by_id(self) -> None:
        thread = self._create()
        first = self._api.upsert_message("user-1", thread["id"], {"message": text_message("u1", "user", "hi")})
        again = self._api.upsert_message(
            "user-1",
            thread["id"],
            {"message": text_message("u1", "user", "hi again"), "usage": {"inputTokens": 4, "outputTokens": 0}},
        )
        self.assertEqual(200, first.status)
        history = again.body["thread"]["history"]
        self.assertEqual(1, len(history))
        self.assertEqual(2, history[0]["version"])
        self.assertEqual(4, history[0]["usage"]["inputTokens"])

    def test_post_message_requires_body(self) -> None:
        thread = self._create()
        self.assertEqual(400, self._api.upsert_message("user-1", thread["id"], None).status)
        self.assertEqual(400, self._api.upsert_message("user-1", thread["id"], {"message": {"id": "x", "role": "robot", "parts": []}}).status)
        self.assertEqual(400, self._api.upsert_message("user-1", thread["id"], {"message": text_message("a", "user", "x"), "usage": {"inputTokens": -1}}).status)
        self.assertEqual(404, self._api.upsert_message("user-1", "missing", {"message": text_message("a", "user", "x")}).status)

    def test_patch_message_edits_and_truncates(self) -> None:
        thread = self._create()
        for message in (
            text_message("u1", "user", "one"),
            text_message("a1", "assistant", "two"),
            text_message("u2", "user", "three"),
            text_message("a2", "assistant", "four"),
        ):
            self._api.upsert_message("user-1", thread["id"], {"message": message})

        response = self._api.edit_message("user-1", thread["id"], "u1", {"message": text_message("u1", "user", "uno")})
        self.assertEqual(200, response.status)
        history = response.body["thread"]["history"]
        self.assertEqual([1], [r["ordinal"] for r in history])
        self.assertEqual("uno", history[0]["message"]["parts"][0]["text"])

    def test_patch_message_only_for_live_user_messages(self) -> None:
        thread = self._create()
        self._api.upsert_message("user-1", thread["id"], {"message": text_message("a1", "assistant", "x")})
        not_user = self._api.edit_message("user-1", thread["id"], "a1", {"message": text_message("a1", "user", "y")})
        missing = self._api.edit_message("user-1", thread["id"], "nope", {"message": text_message("nope", "user", "y")})
        self.assertEqual((404, "message_not_found"), (not_user.status, not_user.body["code"]))
        self.assertEqual(404, missing.status)

    def test_handle_routes_requests(self) -> None:
        created = self._api.handle("POST", "/threads", "user-1", {"title": "Routed"})
        thread_id = created.body["thread"]["id"]
        self.assertEqual(201, created.status)
        self.assertEqual(200, self._api.handle("GET", f"/threads/{thread_id}", "user-1").status)
        self.assertEqual(1, len(self._api.handle("GET", "/threads", "user-1", query={"limit": "5"}).body["threads"]))
        self.assertEqual(200, self._api.handle("POST", f"/threads/{thread_id}/messages", "user-1", {"message": text_message("u1", "user", "x")}).status)
        self.assertEqual(405, self._api.handle("PUT", f"/threads/{thread_id}", "user-1").status)
        self.assertEqual(404, self._api.handle("GET", "/elsewhere", "user-1").status)
        self.assertEqual(400, self._api.handle("GET", "/threads", "user-1", query={"limit": "many"}).status)

    def test_assistant_upsert_compacts_when_over_context(self) -> None:
        api = ThreadsApi(self._threads, self._resolver)
        thread = self._create(modelSelection={"providerId": "openai", "modelId": "openai/gpt-4o-mini", "reasoningBudget": "none"})
        # 128k context with 16k reserved output: ~450k characters crosses the limit.
        big = "x" * 450_000
        api.upsert_message("user-1", thread["id"], {"message": text_message("u1", "user", big)})
        response = api.upsert_message("user-1", thread["id"], {"message": text_message("a1", "assistant", "ok")})
        body = response.body["thread"]
        self.assertEqual(2, body["lastCompactionOrdinal"])
        self.assertEqual("AutoCompactHistory", body["history"][-1]["message"]["parts"][0]["toolName"])
