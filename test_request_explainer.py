#!/usr/bin/env python3
"""
===================================================================
TESTS FOR AI REQUEST EXPLAINER
===================================================================

Covers settings persistence, SSE decoding and streaming against a
local aiohttp server standing in for the Messages API.

USAGE:
    pytest test_request_explainer.py -v

===================================================================
"""

import unittest
import tempfile
import shutil
import json
from pathlib import Path

from aiohttp import web
from aiohttp import test_utils

import request_explainer as explainer


def sse(payload):
    return f"event: {payload['type']}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def text_delta(text):
    return sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})


# ===================================================================
# SETTINGS TESTS
# ===================================================================

class TestSettingsStore(unittest.TestCase):
    """Test loading and saving AI settings."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.path = self.temp_dir / "nested" / "ai_settings.json"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_when_file_missing(self):
        settings = explainer.SettingsStore.from_file(self.path).load()
        self.assertEqual(settings.api_key, "")
        self.assertEqual(settings.model, explainer.DEFAULT_MODEL)
        self.assertFalse(settings.is_configured)

    def test_save_and_reload(self):
        store = explainer.SettingsStore.from_file(self.path)
        self.assertTrue(store.save(explainer.AISettings("sk-ant-test", "claude-3-haiku-20240307")))

        settings = explainer.SettingsStore.from_file(self.path).load()
        self.assertEqual(settings.api_key, "sk-ant-test")
        self.assertEqual(settings.model, "claude-3-haiku-20240307")

    def test_empty_key_not_saved(self):
        store = explainer.SettingsStore.from_file(self.path)
        self.assertFalse(store.save(explainer.AISettings("")))
        self.assertFalse(self.path.exists())

    def test_corrupt_file_ignored(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken")
        self.assertEqual(explainer.SettingsStore.from_file(self.path).load().api_key, "")

    def test_injected_callables(self):
        saved = []
        store = explainer.SettingsStore(lambda: {"api_key": "k"}, saved.append)
        self.assertEqual(store.load().api_key, "k")
        store.save(explainer.AISettings("k2", "m"))
        self.assertEqual(saved, [{"api_key": "k2", "model": "m"}])


# ===================================================================
# SSE DECODER TESTS
# ===================================================================

class TestSSEDecoder(unittest.TestCase):
    """Test incremental event-stream decoding."""

    def test_event_split_across_chunks(self):
        decoder = explainer.SSEDecoder()
        raw = text_delta("Hello")
        self.assertEqual(decoder.feed(raw[:10]), [])
        events = decoder.feed(raw[10:])
        self.assertEqual(len(events), 1)
        self.assertEqual(explainer.extract_text_delta(events[0]), "Hello")

    def test_multibyte_character_split(self):
        decoder = explainer.SSEDecoder()
        raw = text_delta("café")
        cut = raw.index("é".encode("utf-8")) + 1
        decoder.feed(raw[:cut])
        events = decoder.feed(raw[cut:])
        self.assertEqual(explainer.extract_text_delta(events[0]), "café")

    def test_crlf_and_comments(self):
        decoder = explainer.SSEDecoder()
        events = decoder.feed(b': ping\r\n\r\ndata: {"type": "message_stop"}\r\n\r\n')
        self.assertEqual(events, [{"event": None, "data": {"type": "message_stop"}}])

    def test_done_and_malformed_data_skipped(self):
        decoder = explainer.SSEDecoder()
        self.assertEqual(decoder.feed(b"data: [DONE]\n\ndata: {not json\n\n"), [])

    def test_flush_unterminated_event(self):
        decoder = explainer.SSEDecoder()
        decoder.feed(text_delta("tail").rstrip(b"\n"))
        events = decoder.flush()
        self.assertEqual(explainer.extract_text_delta(events[0]), "tail")

    def test_error_event_raises(self):
        event = {"event": "error", "data": {"type": "error", "error": {"message": "Overloaded"}}}
        with self.assertRaisesRegex(explainer.ExplanationError, "Overloaded"):
            explainer.extract_text_delta(event)

    def test_non_text_events_ignored(self):
        self.assertIsNone(explainer.extract_text_delta({"event": "ping", "data": {"type": "ping"}}))


# ===================================================================
# STREAMING TESTS
# ===================================================================

class TestStreamExplanation(unittest.IsolatedAsyncioTestCase):
    """Test streaming against a local Messages API stand-in."""

    async def asyncSetUp(self):
        self.requests = []

        async def messages(request):
            self.requests.append((request.headers.get("anthropic-version"), await request.json()))
            if request.headers.get("x-api-key") != "good-key":
                return web.json_response(
                    {"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}},
                    status=401
                )
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await resp.write(sse({"type": "message_start", "message": {"id": "msg_1"}}))
            await resp.write(text_delta("This request "))
            await resp.write(text_delta("logs a user in."))
            await resp.write(sse({"type": "message_stop"}))
            await resp.write_eof()
            return resp

        app = web.Application()
        app.router.add_post("/v1/messages", messages)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.api_url = str(self.server.make_url("/v1/messages"))

    async def asyncTearDown(self):
        await self.server.close()

    async def test_streams_accumulated_text(self):
        updates = []
        settings = explainer.AISettings("good-key", "claude-3-haiku-20240307")
        text = await explainer.stream_explanation(
            settings, "Explain this HTTP request:\n\nPOST /login", updates.append, api_url=self.api_url
        )

        self.assertEqual(text, "This request logs a user in.")
        self.assertEqual(updates, ["This request ", "This request logs a user in."])

        version, body = self.requests[0]
        self.assertEqual(version, explainer.ANTHROPIC_VERSION)
        self.assertTrue(body["stream"])
        self.assertEqual(body["model"], "claude-3-haiku-20240307")
        self.assertEqual(body["messages"][0]["content"], "Explain this HTTP request:\n\nPOST /login")

    async def test_api_error_message_surfaced(self):
        settings = explainer.AISettings("bad-key")
        with self.assertRaisesRegex(explainer.ExplanationError, "invalid x-api-key"):
            await explainer.stream_explanation(settings, "hi", lambda text: None, api_url=self.api_url)

    async def test_missing_key_rejected_before_request(self):
        with self.assertRaises(explainer.ExplanationError):
            await explainer.stream_explanation(explainer.AISettings(""), "hi", lambda text: None,
                                               api_url=self.api_url)
        self.assertEqual(self.requests, [])

    async def test_empty_request_rejected(self):
        with self.assertRaisesRegex(explainer.ExplanationError, "empty"):
            await explainer.explain_request(explainer.AISettings("good-key"), "   ", lambda text: None)

    async def test_suggest_attacks_prompt(self):
        settings = explainer.AISettings("good-key")
        await explainer.suggest_attacks(settings, "GET /api/users/1", lambda text: None, api_url=self.api_url)

        prompt = self.requests[0][1]["messages"][0]["content"]
        self.assertTrue(prompt.startswith(explainer.ATTACK_CHECKLIST_PROMPT))
        self.assertTrue(prompt.endswith("GET /api/users/1"))


class TestPrompts(unittest.TestCase):

    def test_build_prompt(self):
        self.assertEqual(explainer.build_prompt("Explain:", "GET /"), "Explain:\n\nGET /")
        self.assertEqual(explainer.build_prompt("Explain:", ""), "Explain:")

    def test_selection_prompt_quotes_selection(self):
        self.assertIn('"Authorization: Bearer x"', explainer.build_selection_prompt("Authorization: Bearer x"))


if __name__ == '__main__':
    unittest.main(verbosity=2)
