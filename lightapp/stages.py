"""Stage table and the single-stage runner.

Every text stage follows the same path: check inputs, resolve the model,
render the two-message prompt, invoke, extract, validate against the
declared output shape, and merge onto the previous values.  The image stage
(``stage1_5``) is listed here for ordering and validation but is driven by
the orchestrator, since it fans out to several calls.

Model replies use ``html``/``css``/``js`` keys for the three code payloads;
they land in :class:`CodeArtifact` as ``markup``/``style``/``behavior``.
"""

from __future__ import annotations

import json
import time
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from lightapp.config import ConfigurationError, ModelProfile, ModelRegistry
from lightapp.extractor import ExtractionError, extract_json
from lightapp.llm_client import CompletionClient
from lightapp.models import (
    DEFAULT_APP_NAME,
    CodeArtifact,
    FieldType,
    RequirementDocument,
    StageDefinition,
    StageInputs,
    StageKind,
    StageOutput,
)
from lightapp.prompts import PromptLibrary
from lightapp.utils import format_duration, make_request_id, print_success, tag, truncate


class StageInputError(ValueError):
    """A stage was asked to run without the inputs it needs."""


# ---------------------------------------------------------------------------
# Output shapes
# ---------------------------------------------------------------------------

REQUIREMENTS_SHAPE: dict[str, FieldType] = {
    "appName": FieldType.STRING,
    "appType": FieldType.STRING,
    "appDescription": FieldType.STRING,
    "description": FieldType.STRING,
    "targetUser": FieldType.STRING,
    "coreFeatures": FieldType.STRING_LIST,
    "userFlow": FieldType.STRING,
    "uiLayout": FieldType.OBJECT,
    "interactionDesign": FieldType.OBJECT,
    "visualStyle": FieldType.OBJECT,
    "technicalNotes": FieldType.STRING,
}

IMAGE_PROMPT_SHAPE: dict[str, FieldType] = {
    "prompt": FieldType.STRING,
    "roastText": FieldType.STRING,
}

CODE_SHAPE: dict[str, FieldType] = {
    "html": FieldType.STRING,
    "css": FieldType.STRING,
    "js": FieldType.STRING,
}

# Reply keys -> CodeArtifact fields.
CODE_FIELDS = {"html": "markup", "css": "style", "js": "behavior"}

# Field names and aliases of RequirementDocument; never passed through as extras.
_DOCUMENT_KEYS = frozenset(
    key
    for name, info in RequirementDocument.model_fields.items()
    for key in (name, info.alias or to_camel(name))
)


STAGE_ORDER: tuple[str, ...] = ("stage1", "stage1_5", "stage2", "stage3", "stage4", "stage5")

STAGES: Mapping[str, StageDefinition] = MappingProxyType(
    {
        "stage1": StageDefinition(
            id="stage1",
            position=0,
            name="PM - Requirements",
            kind=StageKind.REQUIREMENTS,
            inputs=("prompt",),
            required_inputs=("prompt",),
            output_shape=REQUIREMENTS_SHAPE,
            description="Understand the request, plan features and interaction",
            template="stage1",
        ),
        "stage1_5": StageDefinition(
            id="stage1_5",
            position=1,
            name="Artist - Images",
            kind=StageKind.IMAGE,
            inputs=("requirement_document",),
            required_inputs=("requirement_document",),
            output_shape=IMAGE_PROMPT_SHAPE,
            description="Generate the cover image and, for games, the game-over image",
        ),
        "stage2": StageDefinition(
            id="stage2",
            position=2,
            name="Dev - Implementation",
            kind=StageKind.CODE,
            inputs=("prompt", "requirement_document", "artifact"),
            required_inputs=("prompt",),
            output_shape=CODE_SHAPE,
            description="Write the core code and app logic",
            template="stage2",
        ),
        "stage3": StageDefinition(
            id="stage3",
            position=3,
            name="Tester - Bug hunt",
            kind=StageKind.CODE,
            inputs=("prompt", "requirement_document", "artifact"),
            required_inputs=("artifact",),
            output_shape=CODE_SHAPE,
            description="Test edge cases and fix latent problems",
            template="stage3",
        ),
        "stage4": StageDefinition(
            id="stage4",
            position=4,
            name="Designer - Visual polish",
            kind=StageKind.CODE,
            inputs=("requirement_document", "artifact"),
            required_inputs=("artifact",),
            output_shape=CODE_SHAPE,
            description="Improve visuals and user experience",
            template="stage4",
        ),
        "stage5": StageDefinition(
            id="stage5",
            position=5,
            name="Refine",
            kind=StageKind.CODE,
            inputs=("prompt", "requirement_document", "artifact", "instruction"),
            required_inputs=("artifact", "instruction"),
            output_shape=CODE_SHAPE,
            description="Apply a conversational change request to existing code",
            template="stage5",
        ),
    }
)


def get_stage(stage_id: str) -> StageDefinition:
    """Look up a stage definition.

    Raises:
        ConfigurationError: If *stage_id* is not a known stage.
    """
    try:
        return STAGES[stage_id]
    except KeyError:
        raise ConfigurationError(
            f"Unknown stage: {stage_id} (expected one of {', '.join(STAGE_ORDER)})"
        ) from None


# ---------------------------------------------------------------------------
# Shape validation and merging
# ---------------------------------------------------------------------------

def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _shape_error(stage_id: str, name: str, expected: str, value: Any) -> ExtractionError:
    return ExtractionError(
        f"{stage_id}: field '{name}' must be {expected}, got {type(value).__name__}",
        truncate(json.dumps(value, ensure_ascii=False, default=str), 200),
    )


def validate_output(
    stage_id: str, shape: Mapping[str, FieldType], value: Mapping[str, Any]
) -> dict[str, Any]:
    """Check *value* against *shape* and return the present, normalised fields.

    ``None`` and empty strings count as absent and are left out of the
    result, so callers can fall back to their defaults with ``dict.get``.

    Raises:
        ExtractionError: If a present field has the wrong type.
    """
    result: dict[str, Any] = {}
    for name, field_type in shape.items():
        raw = value.get(name)
        if raw is None or raw == "":
            continue

        if field_type is FieldType.STRING:
            if not _is_scalar(raw):
                raise _shape_error(stage_id, name, "a string", raw)
            result[name] = str(raw)

        elif field_type is FieldType.STRING_LIST:
            if isinstance(raw, str):
                result[name] = [raw]
            elif isinstance(raw, list) and all(_is_scalar(i) for i in raw):
                result[name] = [str(i) for i in raw if str(i).strip()]
            else:
                raise _shape_error(stage_id, name, "a list of strings", raw)

        elif field_type is FieldType.OBJECT:
            if not isinstance(raw, dict):
                raise _shape_error(stage_id, name, "an object", raw)
            result[name] = raw

    return result


def merge_requirements(stage_id: str, value: Mapping[str, Any]) -> StageOutput:
    """Build the requirement document and the stage's (normally empty) artifact.

    Unknown fields from the reply are kept on the document.  Any spelling of
    a declared field other than its camelCase key is dropped, as are the
    image fields.  Code payloads are not part of the document; if the model
    volunteered any they become the artifact's starting payloads.

    Raises:
        ExtractionError: If the reply does not fit the declared shape.
    """
    fields = validate_output(stage_id, REQUIREMENTS_SHAPE, value)
    code = validate_output(stage_id, CODE_SHAPE, value)
    extras = {
        k: v
        for k, v in value.items()
        if k not in _DOCUMENT_KEYS and k not in CODE_SHAPE
    }
    try:
        document = RequirementDocument.model_validate({**extras, **fields})
    except ValidationError as exc:
        raise ExtractionError(
            f"{stage_id}: reply is not a valid requirement document ({exc.error_count()} errors)",
            truncate(json.dumps(value, ensure_ascii=False, default=str), 200),
        ) from exc
    artifact = CodeArtifact(
        display_name=document.app_name,
        description=document.description or document.app_description,
        **{CODE_FIELDS[k]: v for k, v in code.items()},
    )
    return StageOutput(stage_id=stage_id, artifact=artifact, requirement_document=document)


def merge_code(stage_id: str, value: Mapping[str, Any], inputs: StageInputs) -> StageOutput:
    """Merge a code reply onto the input artifact.

    A payload missing from the reply keeps the input artifact's payload.
    Naming comes from the requirement document, then the input artifact.
    """
    code = validate_output(stage_id, CODE_SHAPE, value)
    base = inputs.artifact or CodeArtifact()
    doc = inputs.requirement_document

    if doc is not None:
        display_name = doc.app_name
        description = doc.description or doc.app_description or base.description
    elif inputs.artifact is not None:
        display_name = base.display_name
        description = base.description
    else:
        display_name = DEFAULT_APP_NAME
        description = ""

    artifact = CodeArtifact(
        markup=code.get("html", base.markup),
        style=code.get("css", base.style),
        behavior=code.get("js", base.behavior),
        display_name=display_name,
        description=description,
    )
    return StageOutput(stage_id=stage_id, artifact=artifact, requirement_document=doc)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class PipelineStageRunner:
    """Runs one text stage end to end.

    Holds only shared, read-only collaborators, so a single runner serves
    concurrent runs.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        client: CompletionClient | None = None,
        prompts: PromptLibrary | None = None,
    ) -> None:
        self.registry = registry
        self.client = client or CompletionClient(api_path=registry.api_path)
        self.prompts = prompts or PromptLibrary()

    async def ask(
        self,
        template: str,
        profile: ModelProfile,
        request_tag: str = "",
        **context: Any,
    ) -> dict[str, Any]:
        """Render *template*, call the model and extract a JSON object.

        Raises:
            UpstreamError: The model call failed.
            ExtractionError: The reply held no recoverable object.
        """
        messages = self.prompts.messages(template, **context)
        raw = await self.client.invoke(profile, messages, request_tag=request_tag)
        return extract_json(raw)

    def build_context(self, inputs: StageInputs) -> dict[str, Any]:
        """Template context for a stage; a pure function of *inputs*."""
        return {
            "prompt": inputs.prompt,
            "doc": inputs.requirement_document or RequirementDocument(),
            "artifact": inputs.artifact or CodeArtifact(),
            "instruction": inputs.instruction,
        }

    async def run(
        self,
        stage_id: str,
        inputs: StageInputs,
        model_override: str | None = None,
        run_id: str | None = None,
    ) -> StageOutput:
        """Run *stage_id* against *inputs* and return its validated output.

        Raises:
            ConfigurationError: Unknown stage or model, or the image stage.
            StageInputError: A required input is missing.
            UpstreamError: The model call failed.
            ExtractionError: The reply could not be recovered or validated.
        """
        stage = get_stage(stage_id)
        if stage.kind is StageKind.IMAGE:
            raise ConfigurationError(
                f"{stage_id} is the image stage; run it through the orchestrator"
            )

        missing = [name for name in stage.required_inputs if name not in inputs.provided()]
        if missing:
            raise StageInputError(f"{stage_id} is missing required input(s): {', '.join(missing)}")

        prefix = tag(run_id or make_request_id(), stage_id)
        profile = self.registry.resolve(stage_id, model_override)
        started = time.monotonic()

        value = await self.ask(stage.template, profile, prefix, **self.build_context(inputs))

        if stage.kind is StageKind.REQUIREMENTS:
            output = merge_requirements(stage_id, value)
            doc = output.requirement_document
            assert doc is not None
            print_success(
                f"{prefix} appName={doc.app_name}, appType={doc.app_type.value} "
                f"({format_duration(time.monotonic() - started)})"
            )
        else:
            output = merge_code(stage_id, value, inputs)
            a = output.artifact
            print_success(
                f"{prefix} HTML {len(a.markup)} chars, CSS {len(a.style)} chars, "
                f"JS {len(a.behavior)} chars ({format_duration(time.monotonic() - started)})"
            )
        return output


__all__ = [
    "CODE_SHAPE",
    "IMAGE_PROMPT_SHAPE",
    "PipelineStageRunner",
    "REQUIREMENTS_SHAPE",
    "STAGES",
    "STAGE_ORDER",
    "StageInputError",
    "get_stage",
    "merge_code",
    "merge_requirements",
    "validate_output",
]
