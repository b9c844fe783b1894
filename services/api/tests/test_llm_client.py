"""LLM client tests against httpx.MockTransport (no network calls)."""

import json

import httpx
import pytest

from app.services.llm_client import LlmClient, LlmError, _extract_first_json_object


def _client(handler) -> LlmClient:
    return LlmClient(
        api_key="test-key",
        base_url="http://llm.test/v1",
        timeout=5,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _tool_response(name: str, arguments: dict) -> dict:
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"type": "function", "function": {"name": name, "arguments": json.dumps(arguments)}}
                    ],
                }
            }
        ]
    }


def test_extract_first_json_object_handles_fences_and_prose() -> None:
    assert _extract_first_json_object('{"a": 1}') == {"a": 1}
    assert _extract_first_json_object('```json\n{"a": 2}\n```') == {"a": 2}
    assert _extract_first_json_object('Sure! {"a": 3} hope that helps') == {"a": 3}
    assert _extract_first_json_object("no json here") is None
    assert _extract_first_json_object("[1, 2]") is None


@pytest.mark.asyncio
async def test_call_function_returns_tool_arguments() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_tool_response("standardizeGenericItems", {"standardizedItems": []}))

    client = _client(handler)
    payload = await client.call_function(
        model="gpt-4o",
        system_prompt="sys",
        user_prompt="user",
        function_name="standardizeGenericItems",
        description="d",
        parameters={"type": "object"},
    )
    await client.close()

    assert payload == {"standardizedItems": []}
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["tool_choice"] == {"type": "function", "function": {"name": "standardizeGenericItems"}}
    assert seen["body"]["tools"][0]["function"]["name"] == "standardizeGenericItems"


@pytest.mark.asyncio
async def test_call_function_falls_back_to_message_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        content = '```json\n{"detailedItems": [{"originalName": "OJ"}]}\n```'
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    client = _client(handler)
    payload = await client.call_function(
        model="m",
        system_prompt="s",
        user_prompt="u",
        function_name="standardizeDetailedItems",
        description="d",
        parameters={},
    )
    assert payload == {"detailedItems": [{"originalName": "OJ"}]}


@pytest.mark.asyncio
async def test_call_function_without_call_or_json_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "I cannot help"}}]})

    client = _client(handler)
    with pytest.raises(LlmError):
        await client.call_function(
            model="m", system_prompt="s", user_prompt="u", function_name="f", description="d", parameters={}
        )


@pytest.mark.asyncio
async def test_http_error_becomes_llm_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    client = _client(handler)
    with pytest.raises(LlmError, match="HTTP 500"):
        await client.complete_json(model="m", system_prompt="s", user_content="u")


@pytest.mark.asyncio
async def test_transport_error_becomes_llm_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(LlmError):
        await client.complete_text(model="m", system_prompt="s", user_prompt="u")


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_request() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    client = LlmClient(
        api_key="",
        base_url="http://llm.test/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert not client.enabled
    with pytest.raises(LlmError):
        await client.complete_text(model="m", system_prompt="s", user_prompt="u")
    assert calls == []


@pytest.mark.asyncio
async def test_complete_json_requests_json_object_and_parses() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"items": []}'}}]})

    client = _client(handler)
    payload = await client.complete_json(model="gpt-4o-mini", system_prompt="s", user_content=[{"type": "text"}])
    assert payload == {"items": []}
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert seen["body"]["messages"][1]["content"] == [{"type": "text"}]
