"""Pydantic v2 models for the LightApp pipeline.

Defines the values that flow between stages: the requirement document
produced by the PM stage, the three-payload code artifact produced by every
later stage, image artifacts and references, and the per-run bookkeeping the
orchestrator keeps while it threads one stage's output into the next.

Models that travel across the HTTP boundary serialise with camelCase aliases
(``appName``, ``displayName``) because that is the shape the editor and the
rendering service consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class AppType(str, Enum):
    """Closed set of product types the PM stage may declare."""
    GAME = "game"
    INTERACTIVE = "interactive"
    TOOL = "tool"
    DISPLAY = "display"


class ImageRole(str, Enum):
    """Which screen a generated image is for."""
    COVER = "cover"
    GAME_OVER = "gameover"


class StageKind(str, Enum):
    """What a stage produces."""
    REQUIREMENTS = "requirements"
    IMAGE = "image"
    CODE = "code"


class FieldType(str, Enum):
    """Semantic type of one field in a stage's declared output shape."""
    STRING = "string"
    STRING_LIST = "string-list"
    OBJECT = "object"


DEFAULT_APP_NAME = "LightApp"


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    """One message of a chat-completion request."""
    role: Literal["system", "user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# Stage definitions
# ---------------------------------------------------------------------------

class StageDefinition(BaseModel):
    """Static description of one pipeline stage."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stage identifier, e.g. 'stage2'")
    position: int = Field(..., ge=0, description="Ordering of the stage in a full run")
    name: str = Field(..., description="Human-readable stage name")
    kind: StageKind
    inputs: tuple[str, ...] = Field(
        default=(), description="Names of the inputs the stage consumes"
    )
    required_inputs: tuple[str, ...] = Field(
        default=(), description="Inputs that must be present before the stage can run"
    )
    output_shape: dict[str, FieldType] = Field(
        default_factory=dict, description="Declared output fields and their semantic types"
    )
    description: str = Field(default="")
    template: str = Field(default="", description="Prompt template name")


# ---------------------------------------------------------------------------
# Requirement document (stage 1 output)
# ---------------------------------------------------------------------------

class RequirementDocument(BaseModel):
    """Structured product requirements produced by the PM stage.

    The field set is fixed but extensible: unknown fields returned by the
    model are kept and passed on to later stages.  Image sub-pipeline results
    are attached with :meth:`with_images`, which returns a new document.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    app_name: str = DEFAULT_APP_NAME
    app_type: AppType = AppType.INTERACTIVE
    app_description: str = ""
    description: str = ""
    target_user: str = ""
    core_features: list[str] = Field(default_factory=list)
    user_flow: str = ""
    ui_layout: dict[str, Any] = Field(default_factory=dict)
    interaction_design: dict[str, Any] = Field(default_factory=dict)
    visual_style: dict[str, Any] = Field(default_factory=dict)
    technical_notes: str = ""

    cover_image_prompt: Optional[str] = None
    game_over_image_prompt: Optional[str] = None
    roast_text: Optional[str] = None
    cover_image_id: Optional[str] = None
    game_over_image_id: Optional[str] = None
    cover_image_path: Optional[str] = None
    game_over_image_path: Optional[str] = None

    @field_validator("app_type", mode="before")
    @classmethod
    def _coerce_app_type(cls, value: Any) -> Any:
        if isinstance(value, AppType):
            return value
        if isinstance(value, str):
            normalised = value.strip().lower()
            if normalised in {t.value for t in AppType}:
                return normalised
        return AppType.INTERACTIVE

    @property
    def is_game(self) -> bool:
        return self.app_type is AppType.GAME

    def with_images(
        self,
        *,
        cover_prompt: str | None,
        game_over_prompt: str | None,
        roast_text: str | None,
        cover: "ImageRef | None",
        game_over: "ImageRef | None",
    ) -> "RequirementDocument":
        """Return a copy carrying whatever subset of image results succeeded."""
        return self.model_copy(
            update={
                "cover_image_prompt": cover_prompt,
                "game_over_image_prompt": game_over_prompt,
                "roast_text": roast_text,
                "cover_image_id": cover.image_id if cover else None,
                "game_over_image_id": game_over.image_id if game_over else None,
                "cover_image_path": cover.path if cover else None,
                "game_over_image_path": game_over.path if game_over else None,
            }
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialise with camelCase keys for the HTTP layer and prompts."""
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Code artifact (stages 2+)
# ---------------------------------------------------------------------------

class CodeArtifact(BaseModel):
    """Three text payloads plus naming metadata.

    Artifacts are immutable values; a stage that changes the code returns a
    new artifact rather than patching the one it was given.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    markup: str = ""
    style: str = ""
    behavior: str = ""
    display_name: str = DEFAULT_APP_NAME
    description: str = ""

    def has_code(self) -> bool:
        """True if at least one of the three payloads is non-empty."""
        return bool(self.markup or self.style or self.behavior)

    def to_payload(self) -> dict[str, str]:
        """Serialise to ``{markup, style, behavior, displayName, description}``."""
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

IMAGE_ROUTE_PREFIX = "/api/images"


class ImageRef(BaseModel):
    """Reference to a stored image, handed to later stages instead of bytes."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    image_id: str
    role: ImageRole
    path: str

    @classmethod
    def for_image(cls, image_id: str, role: ImageRole) -> "ImageRef":
        return cls(image_id=image_id, role=role, path=f"{IMAGE_ROUTE_PREFIX}/{image_id}")


class ImageArtifact(BaseModel):
    """A generated image and the metadata persisted alongside it."""

    model_config = ConfigDict(frozen=True)

    image_id: str
    role: ImageRole
    run_id: str
    data: bytes = Field(..., repr=False)
    content_type: str = "image/png"
    prompt: str = Field(default="", description="Excerpt of the generating prompt")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def make_id(run_id: str, role: ImageRole) -> str:
        return f"{run_id}-{role.value}"

    def metadata(self) -> dict[str, Any]:
        """Everything except the binary payload, JSON-ready."""
        return self.model_dump(mode="json", exclude={"data"})


# ---------------------------------------------------------------------------
# Stage inputs / outputs
# ---------------------------------------------------------------------------

class StageInputs(BaseModel):
    """Everything a stage's prompt builder may read.

    Stage input builders are pure functions of these values; nothing else
    leaks in from earlier stages.
    """

    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    requirement_document: Optional[RequirementDocument] = None
    artifact: Optional[CodeArtifact] = None
    instruction: str = ""

    def provided(self) -> set[str]:
        """Names of the inputs that carry a usable value."""
        names: set[str] = set()
        if self.prompt.strip():
            names.add("prompt")
        if self.requirement_document is not None:
            names.add("requirement_document")
        if self.artifact is not None and self.artifact.has_code():
            names.add("artifact")
        if self.instruction.strip():
            names.add("instruction")
        return names


class StageOutput(BaseModel):
    """Validated result of one stage."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    artifact: CodeArtifact
    requirement_document: Optional[RequirementDocument] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stageId": self.stage_id,
            "artifact": self.artifact.to_payload(),
        }
        if self.requirement_document is not None:
            payload["requirementDocument"] = self.requirement_document.to_payload()
        return payload


class PipelineRun(BaseModel):
    """Mutable per-call state of a full-sequence run. Never persisted."""

    run_id: str
    prompt: str
    requirement_document: Optional[RequirementDocument] = None
    artifact: Optional[CodeArtifact] = None
    completed_stages: list[str] = Field(default_factory=list)

    def inputs(self) -> StageInputs:
        return StageInputs(
            prompt=self.prompt,
            requirement_document=self.requirement_document,
            artifact=self.artifact,
        )

    def apply(self, output: StageOutput) -> None:
        """Thread a validated stage output into the run state."""
        self.artifact = output.artifact
        if output.requirement_document is not None:
            self.requirement_document = output.requirement_document
        self.completed_stages.append(output.stage_id)


@dataclass
class SequenceResult:
    """Outcome of a full-sequence run.

    On failure ``artifact`` is the last fully validated artifact (or ``None``
    if no stage finished) and ``completed_stages`` lists where a caller can
    resume from.
    """

    run_id: str
    artifact: CodeArtifact | None = None
    requirement_document: RequirementDocument | None = None
    completed_stages: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "success": self.success,
            "artifact": self.artifact.to_payload() if self.artifact else None,
            "requirementDocument": (
                self.requirement_document.to_payload() if self.requirement_document else None
            ),
            "completedStages": list(self.completed_stages),
            "failedStage": self.failed_stage,
            "error": str(self.error) if self.error else None,
        }
