"""
Tests del gateway de proveedores con httpx.MockTransport (sin red).
"""

import asyncio
import json

import httpx
import pytest

from aikizi.errors import (
    ConfigurationError,
    EmptyResponse,
    InvalidInput,
    ProviderCanceled,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)
from aikizi.services.providers import (
    MODELS,
    GeminiModel,
    ImageInput,
    OpenAIModel,
    ProviderGateway,
    resolve_model,
)

from conftest import PNG_B64

IMAGE = ImageInput(base64=PNG_B64, mime_type="image/png")
GEMINI = MODELS["gemini-2.5-flash"]
GPT = MODELS["gpt-5-mini"]


def gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def openai_reply(text):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-5-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
    }


def _gateway(handler):
    return ProviderGateway(
        openai_api_key="sk-test",
        gemini_api_key="gemini-key",
        openai_base_url="https://api.openai.test/v1",
        gemini_base_url="https://gemini.test",
        transport=httpx.MockTransport(handler),
        metadata_timeout=1.0,
    )


def _decode(gw, model=GEMINI, image=IMAGE, timeout=2.0, cancel_event=None):
    return asyncio.run(gw.decode(image, model, timeout, cancel_event))


class TestModels:
    def test_resolve_known_models(self):
        assert resolve_model("gpt-5") == OpenAIModel("gpt-5")
        assert resolve_model(" Gemini-2.5-Pro ") == GeminiModel("gemini-2.5-pro")

    def test_unknown_model_is_invalid_input(self):
        with pytest.raises(InvalidInput):
            resolve_model("dall-e")

    def test_missing_key_fails_closed(self):
        gw = ProviderGateway(openai_api_key=None, gemini_api_key="x")
        with pytest.raises(ConfigurationError):
            _decode(gw, model=GPT)


class TestGemini:
    def test_inline_image_request(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.url.params["key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=gemini_reply('{"tags": ["x"]}'))

        text = _decode(_gateway(handler))

        assert text == '{"tags": ["x"]}'
        assert seen["path"] == "/v1beta/models/gemini-2.5-flash:generateContent"
        assert seen["key"] == "gemini-key"
        inline = seen["body"]["contents"][0]["parts"][1]["inline_data"]
        assert inline == {"mime_type": "image/png", "data": PNG_B64}

    def test_url_image_is_downloaded(self):
        def handler(request):
            if request.url.host == "img.test":
                return httpx.Response(200, content=b"\xff\xd8jpeg", headers={"content-type": "image/jpeg"})
            inline = json.loads(request.content)["contents"][0]["parts"][1]["inline_data"]
            assert inline["mime_type"] == "image/jpeg"
            return httpx.Response(200, json=gemini_reply("ok"))

        assert _decode(_gateway(handler), image=ImageInput(url="https://img.test/a.jpg")) == "ok"

    def test_url_not_an_image_rejected(self):
        def handler(request):
            return httpx.Response(200, text="<html>", headers={"content-type": "text/html"})

        with pytest.raises(ProviderRejected):
            _decode(_gateway(handler), image=ImageInput(url="https://img.test/page"))

    @pytest.mark.parametrize(
        "status, error",
        [(400, ProviderRejected), (403, ProviderRejected), (500, ProviderUnavailable), (503, ProviderUnavailable)],
    )
    def test_http_errors_mapped(self, status, error):
        def handler(request):
            return httpx.Response(status, json={"error": {"message": "nope"}})

        with pytest.raises(error):
            _decode(_gateway(handler))

    def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ProviderUnavailable):
            _decode(_gateway(handler))

    def test_no_text_is_empty_response(self):
        def handler(request):
            return httpx.Response(200, json={"candidates": []})

        with pytest.raises(EmptyResponse):
            _decode(_gateway(handler))

    def test_blocked_prompt_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        with pytest.raises(ProviderRejected):
            _decode(_gateway(handler))

    def test_non_object_body_is_empty_response(self):
        def handler(request):
            return httpx.Response(200, json=[{"text": "x"}])

        with pytest.raises(EmptyResponse):
            _decode(_gateway(handler))


class TestOpenAI:
    def test_chat_completion_with_data_url(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=openai_reply('{"tags": ["y"]}'))

        text = _decode(_gateway(handler), model=GPT)

        assert text == '{"tags": ["y"]}'
        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-5-mini"
        image_part = seen["body"]["messages"][1]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")

    def test_auth_error_rejected(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "bad key", "type": "invalid_request_error"}})

        with pytest.raises(ProviderRejected):
            _decode(_gateway(handler), model=GPT)

    def test_server_error_unavailable(self):
        def handler(request):
            return httpx.Response(503, json={"error": {"message": "overloaded"}})

        with pytest.raises(ProviderUnavailable):
            _decode(_gateway(handler), model=GPT)

    def test_empty_content(self):
        def handler(request):
            return httpx.Response(200, json=openai_reply(""))

        with pytest.raises(EmptyResponse):
            _decode(_gateway(handler), model=GPT)


class TestTimeoutAndCancel:
    def test_timeout_aborts_call(self):
        state = {"finished": False}

        async def handler(request):
            await asyncio.sleep(5)
            state["finished"] = True
            return httpx.Response(200, json=gemini_reply("late"))

        with pytest.raises(ProviderTimeout) as exc:
            _decode(_gateway(handler), timeout=0.1)
        assert not isinstance(exc.value, ProviderCanceled)
        assert not state["finished"]

    def test_cancel_signal_aborts_call(self):
        state = {"finished": False}

        async def handler(request):
            await asyncio.sleep(5)
            state["finished"] = True
            return httpx.Response(200, json=gemini_reply("late"))

        async def scenario():
            event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, event.set)
            return await _gateway(handler).decode(IMAGE, GEMINI, 2.0, event)

        with pytest.raises(ProviderCanceled) as exc:
            asyncio.run(scenario())
        assert exc.value.code == "CANCELED"
        assert not state["finished"]
