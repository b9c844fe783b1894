"""OpenAI-compatible chat completions client (raw HTTP via httpx).

Used for:
- Receipt extraction (vision message, `response_format: json_object`)
- Two-stage name standardization (function calling with a strict schema)
- Short yes/no and enhancement prompts for user feedback

No retries here: callers degrade to their fallback path instead.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from app.settings import get_settings

logger = logging.getLogger("uvicorn.error")


class LlmError(RuntimeError):
    pass


def _extract_first_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort extraction of the first JSON object from a string.

    Tolerates markdown code fences and prose around the object.
    """
    text = (text or "").strip()
    if not text:
        return None
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        text = fenced.group(1).strip()
    # Fast path
    if text.startswith("{") and text.endswith("}"):
        try:
            parsed = json.loads(text)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass
    m = re.search(r"\{[\s\S]*\}", text)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _message_text(data: Any) -> str:
    """Extract choices[0].message.content (string or list of text parts)."""
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        return ""
    for choice in data["choices"]:
        if not isinstance(choice, dict):
            continue
        msg = choice.get("message")
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                str(p.get("text") or "")
                for p in content
                if isinstance(p, dict) and p.get("type") in ("text", "output_text")
            ]
            return "".join(parts)
    return ""


def _tool_arguments(data: Any, function_name: str) -> str | None:
    """Return the raw JSON arguments of the first call to `function_name`."""
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        return None
    for choice in data["choices"]:
        msg = choice.get("message") if isinstance(choice, dict) else None
        calls = msg.get("tool_calls") if isinstance(msg, dict) else None
        if not isinstance(calls, list):
            continue
        for call in calls:
            fn = call.get("function") if isinstance(call, dict) else None
            if isinstance(fn, dict) and fn.get("name") == function_name:
                args = fn.get("arguments")
                return args if isinstance(args, str) else json.dumps(args)
    return None


class LlmClient:
    """Thin async client for `/chat/completions`."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.timeout = timeout or settings.llm_timeout_seconds
        self._http_client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.enabled:
            raise LlmError("OPENAI_API_KEY is not configured")

        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        client = await self._get_client()
        try:
            r = await client.post(url, headers=headers, json=body)
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            logger.warning(f"[llm] timeout model={body.get('model')}")
            raise LlmError("LLM request timed out") from e
        except httpx.HTTPStatusError as e:
            status = int(e.response.status_code) if e.response is not None else 0
            response_text = e.response.text[:500] if e.response is not None else ""
            logger.error(f"[llm] OpenAI HTTP {status} url={url} model={body.get('model')} response={response_text}")
            raise LlmError(f"LLM upstream error (HTTP {status})") from e
        except httpx.HTTPError as e:
            raise LlmError(f"LLM transport error: {e}") from e
        except ValueError as e:
            raise LlmError("LLM returned a non-JSON response") from e

        if not isinstance(data, dict):
            raise LlmError("LLM returned an unexpected payload")
        return data

    async def call_function(
        self,
        *,
        model: str,
        system_prompt: str,
        user_prompt: str,
        function_name: str,
        description: str,
        parameters: dict[str, Any],
        temperature: float = 0.2,
        max_tokens: int = 4000,
    ) -> dict[str, Any]:
        """Force a single function call and return its parsed arguments."""
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": function_name,
                        "description": description,
                        "parameters": parameters,
                    },
                }
            ],
            "tool_choice": {"type": "function", "function": {"name": function_name}},
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        data = await self._post(body)

        raw_args = _tool_arguments(data, function_name)
        if raw_args is None:
            # Some compatible servers answer in content instead of tool_calls.
            payload = _extract_first_json_object(_message_text(data))
            if payload is None:
                raise LlmError(f"No {function_name} call in LLM response")
            return payload
        payload = _extract_first_json_object(raw_args)
        if payload is None:
            raise LlmError(f"Malformed {function_name} arguments")
        return payload

    async def complete_json(
        self,
        *,
        model: str,
        system_prompt: str,
        user_content: str | list[dict[str, Any]],
        max_tokens: int = 4000,
    ) -> dict[str, Any]:
        """Chat completion constrained to a JSON object; returns the parsed object."""
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "response_format": {"type": "json_object"},
            "max_tokens": max_tokens,
        }
        data = await self._post(body)
        payload = _extract_first_json_object(_message_text(data))
        if payload is None:
            raise LlmError("LLM response did not contain a JSON object")
        return payload

    async def complete_text(
        self,
        *,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 50,
        temperature: float = 0.0,
    ) -> str:
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        data = await self._post(body)
        return _message_text(data).strip()


# Singleton instance
_client: LlmClient | None = None


def get_llm_client() -> LlmClient:
    """Get or create the process-wide LLM client."""
    global _client
    if _client is None:
        _client = LlmClient()
    return _client


async def close_llm_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
