"""Shared pytest fixtures for the LightApp test suite.

Provides reusable fixtures for:
- A validated configuration with two text models and an image model
- Mocked ``httpx.AsyncClient`` instances and canned HTTP responses
- A scripted completion client that answers per stage
- Sample requirement documents and code artifacts
"""

from __future__ import annotations

import base64
import copy
import json
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from lightapp.config import LightAppConfig, ModelRegistry
from lightapp.image_client import ImageGenerationClient
from lightapp.models import AppType, CodeArtifact, RequirementDocument
from lightapp.orchestrator import Orchestrator
from lightapp.prompts import PromptLibrary
from lightapp.stages import PipelineStageRunner
from lightapp.storage import MemoryImageStore

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-payload"


BASE_CONFIG: dict[str, Any] = {
    "api": {"path": "/chat/completions"},
    "models": {
        "instruct": {
            "name": "instruct",
            "display_name": "Instruct Model",
            "endpoint": "https://llm.test/v1",
            "api_key": "sk-shared",
            "model": "test-instruct",
            "timeout": 60,
        },
        "coder": {
            "name": "coder",
            "display_name": "Coder Model",
            "endpoint": "https://llm.test/v1/",
            "api_key": "sk-coder",
            "model": "test-coder",
            "max_tokens": 16384,
            "temperature": 0.5,
            "top_p": 0.8,
            "timeout": 120,
        },
    },
    "stages": {
        "stage1": {"name": "PM", "model_key": "instruct"},
        "stage1_5": {"name": "Artist", "model_key": "instruct"},
        "stage2": {"name": "Dev", "model_key": "coder", "available_models": ["coder", "instruct"]},
        "stage3": {"name": "Tester", "model_key": "coder"},
        "stage4": {"name": "Designer", "model_key": "coder"},
        "stage5": {"name": "Refine", "model_key": "coder"},
    },
    "text2image": {
        "endpoint": "https://images.test/v1/images/generations",
        "model": "test-image",
        "api_key": "img-key",
    },
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def config_data(tmp_path: Path) -> dict[str, Any]:
    """A fresh, mutable copy of the base configuration."""
    data = copy.deepcopy(BASE_CONFIG)
    data["storage"] = {"output_dir": str(tmp_path / "output")}
    return data


@pytest.fixture
def app_config(config_data: dict[str, Any]) -> LightAppConfig:
    return LightAppConfig.from_dict(config_data)


@pytest.fixture
def registry(app_config: LightAppConfig) -> ModelRegistry:
    return ModelRegistry(app_config)


# ---------------------------------------------------------------------------
# HTTP mocks
# ---------------------------------------------------------------------------

def _make_response(
    status_code: int = 200,
    json_data: Any = None,
    text: str | None = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if json_data is not None:
        response.json.return_value = json_data
        response.text = json.dumps(json_data)
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    return response


def _make_async_client(post: AsyncMock) -> AsyncMock:
    client = AsyncMock()
    client.post = post
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


@pytest.fixture
def make_response() -> Callable[..., MagicMock]:
    """Factory for mocked ``httpx.Response`` objects."""
    return _make_response


@pytest.fixture
def make_async_client() -> Callable[[AsyncMock], AsyncMock]:
    """Factory wrapping a ``post`` mock in an async-context-manager client."""
    return _make_async_client


@pytest.fixture
def chat_body() -> Callable[[str], dict[str, Any]]:
    """Factory for a chat-completion response body carrying *content*."""

    def _body(content: str) -> dict[str, Any]:
        return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}

    return _body


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def image_body() -> Callable[..., dict[str, Any]]:
    """Factory for a text-to-image response body."""

    def _body(data: bytes = PNG_BYTES) -> dict[str, Any]:
        return {"data": [{"b64_json": base64.b64encode(data).decode("ascii")}]}

    return _body


# ---------------------------------------------------------------------------
# Scripted completion client
# ---------------------------------------------------------------------------

class ScriptedCompletionClient:
    """Answers ``invoke`` from a table keyed by the last tag segment.

    Stage calls are tagged ``[run][stageN]`` and image prompt calls
    ``[run][stage1_5][cover]`` / ``[run][stage1_5][gameover]``, so the keys
    are ``stage1`` .. ``stage5``, ``cover`` and ``gameover``.  A value that is
    an exception is raised instead of returned.
    """

    def __init__(self, replies: dict[str, Any]) -> None:
        self.replies = dict(replies)
        self.calls: list[tuple[str, str, list[Any]]] = []

    async def invoke(self, profile, messages, request_tag=""):
        key = request_tag.rsplit("[", 1)[-1].rstrip("]")
        self.calls.append((key, profile.key, list(messages)))
        reply = self.replies[key]
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)

    def keys_called(self) -> list[str]:
        return [key for key, _, _ in self.calls]


@pytest.fixture
def scripted_client() -> Callable[[dict[str, Any]], ScriptedCompletionClient]:
    return ScriptedCompletionClient


@pytest.fixture
def image_store() -> MemoryImageStore:
    return MemoryImageStore()


@pytest.fixture
def make_orchestrator(
    registry: ModelRegistry,
    app_config: LightAppConfig,
    image_store: MemoryImageStore,
) -> Callable[[dict[str, Any]], tuple[Orchestrator, ScriptedCompletionClient]]:
    """Build an orchestrator whose text model answers from *replies*."""

    def _build(replies: dict[str, Any]) -> tuple[Orchestrator, ScriptedCompletionClient]:
        client = ScriptedCompletionClient(replies)
        runner = PipelineStageRunner(registry, client=client, prompts=PromptLibrary())
        images = ImageGenerationClient(app_config.text2image, store=image_store)
        return Orchestrator(registry, runner, images), client

    return _build


# ---------------------------------------------------------------------------
# Sample values
# ---------------------------------------------------------------------------

@pytest.fixture
def game_document() -> RequirementDocument:
    return RequirementDocument(
        app_name="JumpIt",
        app_type=AppType.GAME,
        app_description="Tap to jump over obstacles",
        target_user="Casual mobile players",
        core_features=["Tap to jump", "Score counter", "Restart button"],
        user_flow="Start -> tap to jump -> crash -> see score -> restart",
        visual_style={"theme": "cartoon", "colorScheme": "sky blue and orange"},
        technical_notes="Use requestAnimationFrame for the game loop",
    )


@pytest.fixture
def tool_document() -> RequirementDocument:
    return RequirementDocument(
        app_name="UnitFlip",
        app_type=AppType.TOOL,
        app_description="Convert between metric and imperial units",
        core_features=["Length", "Weight"],
    )


@pytest.fixture
def sample_artifact() -> CodeArtifact:
    return CodeArtifact(
        markup='<div id="app"><canvas id="game"></canvas></div>',
        style="#app { display: flex; }",
        behavior="const canvas = document.getElementById('game');",
        display_name="JumpIt",
        description="Tap to jump over obstacles",
    )
