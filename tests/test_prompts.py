"""Unit tests for the prompt library (lightapp.prompts).

Tests cover:
- Every named prompt renders a [system, user] pair
- Stage 2 start-screen and game-over instructions follow the image fields
- Stage 5 carries the instruction and existing code
- Unknown prompt names and missing context values
"""

from __future__ import annotations

import pytest
from jinja2 import UndefinedError

from lightapp.models import CodeArtifact, RequirementDocument
from lightapp.prompts import PROMPT_NAMES, PromptLibrary


@pytest.fixture
def library() -> PromptLibrary:
    return PromptLibrary()


def _context(doc: RequirementDocument, artifact: CodeArtifact) -> dict:
    return {
        "prompt": "a tap-to-jump game",
        "doc": doc,
        "artifact": artifact,
        "instruction": "make the frog green",
    }


class TestPromptLibrary:
    @pytest.mark.unit
    @pytest.mark.parametrize("name", PROMPT_NAMES)
    def test_every_prompt_renders(self, library, name, game_document, sample_artifact):
        messages = library.messages(name, **_context(game_document, sample_artifact))

        assert [m.role for m in messages] == ["system", "user"]
        assert all(m.content.strip() for m in messages)

    @pytest.mark.unit
    def test_stage1_includes_user_request(self, library):
        user = library.messages("stage1", **_context(RequirementDocument(), CodeArtifact()))[1]
        assert "a tap-to-jump game" in user.content

    @pytest.mark.unit
    def test_unknown_prompt(self, library):
        with pytest.raises(KeyError, match="nope"):
            library.messages("nope")

    @pytest.mark.unit
    def test_missing_context_value_is_an_error(self, library):
        with pytest.raises(UndefinedError):
            library.messages("stage1")

    @pytest.mark.unit
    def test_bullet_list_filter(self, library, sample_artifact):
        doc = RequirementDocument(core_features=["Tap to jump", "Score counter"])
        user = library.messages("cover_image", **_context(doc, sample_artifact))[1]
        assert "Tap to jump, Score counter" in user.content

    @pytest.mark.unit
    def test_bullet_list_filter_empty(self, library, sample_artifact):
        user = library.messages("cover_image", **_context(RequirementDocument(), sample_artifact))[1]
        assert "none listed" in user.content


class TestStage2ImageInstructions:
    @pytest.mark.unit
    def test_without_images(self, library, game_document):
        user = library.messages("stage2", **_context(game_document, CodeArtifact()))[1]
        assert "start-screen" not in user.content
        assert "gameover-screen" not in user.content

    @pytest.mark.unit
    def test_with_cover_only(self, library, tool_document):
        doc = tool_document.model_copy(update={"cover_image_path": "/api/images/K3Q9Z-cover"})
        user = library.messages("stage2", **_context(doc, CodeArtifact()))[1]
        assert "/api/images/K3Q9Z-cover" in user.content
        assert "start-screen" in user.content
        assert "gameover-screen" not in user.content

    @pytest.mark.unit
    def test_game_with_both_images(self, library, game_document):
        doc = game_document.model_copy(
            update={
                "cover_image_path": "/api/images/K3Q9Z-cover",
                "game_over_image_path": "/api/images/K3Q9Z-gameover",
                "roast_text": "My cat jumps better.",
            }
        )
        user = library.messages("stage2", **_context(doc, CodeArtifact()))[1]
        assert "/api/images/K3Q9Z-gameover" in user.content
        assert "My cat jumps better." in user.content
        assert "gameover-screen" in user.content


class TestStage5:
    @pytest.mark.unit
    def test_carries_instruction_and_code(self, library, game_document, sample_artifact):
        user = library.messages("stage5", **_context(game_document, sample_artifact))[1]
        assert "make the frog green" in user.content
        assert sample_artifact.markup in user.content
        assert sample_artifact.style in user.content
        assert sample_artifact.behavior in user.content
