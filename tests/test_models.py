"""Unit tests for pipeline value types (lightapp.models)."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from lightapp.models import (
    AppType,
    CodeArtifact,
    ImageArtifact,
    ImageRef,
    ImageRole,
    PipelineRun,
    RequirementDocument,
    SequenceResult,
    StageInputs,
    StageOutput,
)


class TestRequirementDocument:
    @pytest.mark.unit
    def test_defaults(self):
        doc = RequirementDocument()
        assert doc.app_name == "LightApp"
        assert doc.app_type is AppType.INTERACTIVE
        assert doc.core_features == []
        assert doc.cover_image_id is None

    @pytest.mark.unit
    def test_camel_case_input_and_output(self):
        doc = RequirementDocument.model_validate(
            {"appName": "JumpIt", "appType": "game", "coreFeatures": ["Jump"]}
        )
        assert doc.app_name == "JumpIt"
        assert doc.is_game
        payload = doc.to_payload()
        assert payload["appName"] == "JumpIt"
        assert payload["appType"] == "game"
        assert payload["coreFeatures"] == ["Jump"]

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["arcade", 42, None, ""])
    def test_unknown_app_type_coerced(self, value):
        assert RequirementDocument.model_validate({"appType": value}).app_type is AppType.INTERACTIVE

    @pytest.mark.unit
    def test_app_type_is_case_insensitive(self):
        assert RequirementDocument.model_validate({"appType": " Game "}).is_game

    @pytest.mark.unit
    def test_extra_fields_preserved(self):
        doc = RequirementDocument.model_validate({"appName": "X", "enrichedPrompt": "more"})
        assert doc.to_payload()["enrichedPrompt"] == "more"

    @pytest.mark.unit
    def test_frozen(self):
        doc = RequirementDocument()
        with pytest.raises(ValidationError):
            doc.app_name = "Other"

    @pytest.mark.unit
    def test_with_images_partial(self, game_document):
        cover = ImageRef.for_image("K3Q9Z-cover", ImageRole.COVER)
        updated = game_document.with_images(
            cover_prompt="a frog",
            game_over_prompt=None,
            roast_text=None,
            cover=cover,
            game_over=None,
        )

        assert updated is not game_document
        assert game_document.cover_image_id is None
        assert updated.cover_image_id == "K3Q9Z-cover"
        assert updated.cover_image_path == "/api/images/K3Q9Z-cover"
        assert updated.game_over_image_id is None
        assert updated.app_name == "JumpIt"


class TestCodeArtifact:
    @pytest.mark.unit
    def test_has_code(self):
        assert not CodeArtifact().has_code()
        assert CodeArtifact(style="body{}").has_code()

    @pytest.mark.unit
    def test_payload_shape(self, sample_artifact):
        assert set(sample_artifact.to_payload()) == {
            "markup",
            "style",
            "behavior",
            "displayName",
            "description",
        }


class TestImages:
    @pytest.mark.unit
    def test_make_id(self):
        assert ImageArtifact.make_id("K3Q9Z", ImageRole.GAME_OVER) == "K3Q9Z-gameover"

    @pytest.mark.unit
    def test_ref_payload(self):
        ref = ImageRef.for_image("K3Q9Z-cover", ImageRole.COVER)
        assert ref.model_dump(by_alias=True, mode="json") == {
            "imageId": "K3Q9Z-cover",
            "role": "cover",
            "path": "/api/images/K3Q9Z-cover",
        }

    @pytest.mark.unit
    def test_metadata_excludes_data(self, png_bytes):
        image = ImageArtifact(image_id="a", role=ImageRole.COVER, run_id="r", data=png_bytes)
        assert "data" not in image.metadata()
        assert isinstance(image.metadata()["created_at"], str)


class TestStageInputs:
    @pytest.mark.unit
    def test_provided(self, game_document, sample_artifact):
        inputs = StageInputs(
            prompt="x", requirement_document=game_document, artifact=sample_artifact
        )
        assert inputs.provided() == {"prompt", "requirement_document", "artifact"}

    @pytest.mark.unit
    def test_blank_values_not_provided(self):
        inputs = StageInputs(prompt="  ", artifact=CodeArtifact(), instruction="")
        assert inputs.provided() == set()


class TestPipelineRun:
    @pytest.mark.unit
    def test_apply_threads_outputs(self, game_document, sample_artifact):
        run = PipelineRun(run_id="K3Q9Z", prompt="a tap-to-jump game")
        run.apply(
            StageOutput(stage_id="stage1", artifact=CodeArtifact(), requirement_document=game_document)
        )
        run.apply(StageOutput(stage_id="stage2", artifact=sample_artifact))

        assert run.completed_stages == ["stage1", "stage2"]
        assert run.artifact == sample_artifact
        # a code stage without a document keeps the earlier one
        assert run.requirement_document == game_document
        assert run.inputs().requirement_document == game_document


class TestSequenceResult:
    @pytest.mark.unit
    def test_success(self, sample_artifact):
        result = SequenceResult(run_id="K3Q9Z", artifact=sample_artifact, completed_stages=["stage2"])
        data = result.to_dict()
        assert result.success
        assert data["success"] is True
        assert data["artifact"]["displayName"] == "JumpIt"
        assert data["failedStage"] is None
        assert data["error"] is None

    @pytest.mark.unit
    def test_failure(self):
        result = SequenceResult(run_id="K3Q9Z", failed_stage="stage1", error=RuntimeError("boom"))
        data = result.to_dict()
        assert not result.success
        assert data["artifact"] is None
        assert data["failedStage"] == "stage1"
        assert data["error"] == "boom"
