"""Async client for OpenAI-compatible chat-completion endpoints.

Each stage makes exactly one non-streaming call through
:meth:`CompletionClient.invoke`.  Failures are raised as
:class:`UpstreamError` and are deliberately *not* retried here: a failing
text stage is re-triggered by the operator, so prompt or model
misconfiguration is never hidden behind silent retries.

Typical usage::

    client = CompletionClient(api_path="/chat/completions")
    text = await client.invoke(profile, [
        ChatMessage(role="system", content="You are a PM."),
        ChatMessage(role="user", content="a tap-to-jump game"),
    ])
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import httpx

from lightapp.config import ModelProfile
from lightapp.models import ChatMessage
from lightapp.utils import print_error, print_info, tag, truncate

_EXCERPT_CHARS = 500


class UpstreamError(Exception):
    """A text model call failed at the transport or API level.

    Attributes:
        status: HTTP status code, or ``None`` when no response was received.
        body_excerpt: The first few hundred characters of the response body
            (or the transport error message).
    """

    def __init__(self, status: int | None, body_excerpt: str, model: str = "") -> None:
        self.status = status
        self.body_excerpt = body_excerpt
        self.model = model
        where = f" from {model}" if model else ""
        status_text = f"HTTP {status}" if status is not None else "no response"
        super().__init__(f"LLM API error{where} ({status_text}): {body_excerpt}")


class CompletionClient:
    """Performs one blocking chat-completion call per :meth:`invoke`.

    A fresh ``httpx.AsyncClient`` is opened per call with the profile's
    timeout, so the client object itself holds no connection state and is
    safe to share between runs.
    """

    def __init__(self, api_path: str = "/chat/completions", connect_timeout: float = 10.0) -> None:
        self.api_path = api_path
        self.connect_timeout = connect_timeout

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self, profile: ModelProfile) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(profile.timeout, connect=min(self.connect_timeout, profile.timeout)),
        )

    def url_for(self, profile: ModelProfile) -> str:
        return f"{profile.endpoint.rstrip('/')}{self.api_path}"

    @staticmethod
    def build_payload(profile: ModelProfile, messages: Sequence[ChatMessage]) -> dict[str, Any]:
        """Build the request body; optional sampling knobs only when configured."""
        payload: dict[str, Any] = {
            "model": profile.model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": profile.max_tokens,
            "temperature": profile.temperature,
            "stream": False,
        }
        if profile.top_p is not None:
            payload["top_p"] = profile.top_p
        if profile.top_k is not None:
            payload["top_k"] = profile.top_k
        if profile.repetition_penalty is not None:
            payload["repetition_penalty"] = profile.repetition_penalty
        return payload

    @staticmethod
    def _extract_text(data: Any) -> str:
        """Pull ``choices[0].message.content`` out of a response body."""
        if not isinstance(data, dict):
            return ""
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def invoke(
        self,
        profile: ModelProfile,
        messages: Sequence[ChatMessage],
        request_tag: str = "",
    ) -> str:
        """Send *messages* to the profile's model and return the reply text.

        An empty reply is returned as ``""`` so the extractor can report it
        with the raw text in hand.

        Raises:
            UpstreamError: Non-2xx status, transport failure, timeout, or a
                body that is not JSON.
        """
        prefix = request_tag or tag(profile.key)
        url = self.url_for(profile)
        print_info(prefix, f"Calling LLM: {profile.label} ({profile.model})")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {profile.api_key}",
        }
        payload = self.build_payload(profile, messages)

        try:
            async with self._client(profile) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(
                None, f"Request timed out after {profile.timeout}s", profile.model
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(None, f"Cannot reach {url}: {exc}", profile.model) from exc

        if not 200 <= response.status_code < 300:
            body = truncate(response.text, _EXCERPT_CHARS)
            print_error(f"{prefix} LLM error {response.status_code}: {body}")
            raise UpstreamError(response.status_code, body, profile.model)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise UpstreamError(
                response.status_code,
                f"Response is not JSON: {truncate(response.text, _EXCERPT_CHARS)}",
                profile.model,
            ) from exc

        content = self._extract_text(data)
        if not content:
            print_error(
                f"{prefix} Empty content. Response: "
                f"{truncate(json.dumps(data, ensure_ascii=False, default=str), 1000)}"
            )
        else:
            print_info(prefix, f"Response length: {len(content)}")
        return content
