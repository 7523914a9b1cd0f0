"""LightApp configuration and model registry.

Centralised, typed configuration for the pipeline.  All settings use
Pydantic v2 models so they are validated once at start-up and then shared,
read-only, by every run.

The configuration lives in two JSON files:

* ``config.json`` -- model profiles, per-stage model choices, image model.
* ``config.local.json`` -- optional, git-ignored; overrides ``endpoint`` and
  ``api_key`` per model so credentials never live in the shared file.

:class:`ModelRegistry` resolves a stage (and an optional caller override) to
the concrete :class:`ModelProfile` used for a completion call.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lightapp.utils import load_json, print_warning


class ConfigurationError(Exception):
    """Raised for unknown stages/models or invalid configuration files.

    This is a start-up class error: it is surfaced immediately and never
    retried.
    """


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ModelProfile(BaseModel):
    """Connection and sampling parameters for one chat-completion model."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(default="", description="Registry key, filled in from the mapping key")
    name: str = Field(default="")
    display_name: str = Field(default="")
    endpoint: str = Field(..., description="Base URL; the API path is appended")
    api_key: str = Field(default="")
    model: str = Field(..., description="Model identifier sent in the request body")
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.7, ge=0.0)
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repetition_penalty: Optional[float] = None
    timeout: float = Field(..., gt=0, description="Per-request timeout in seconds")

    @property
    def label(self) -> str:
        return self.display_name or self.name or self.key


class StageModelConfig(BaseModel):
    """Which model a stage uses by default and which the caller may pick."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="")
    model_key: str = Field(..., description="Default model profile for the stage")
    available_models: list[str] = Field(
        default_factory=list,
        description="Profiles offered to the caller; empty means every profile",
    )


class ImageModelConfig(BaseModel):
    """Configuration for the text-to-image endpoint."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    model: str
    api_key: str = Field(default="")
    size: str = Field(default="512x512")
    true_cfg_scale: float = Field(default=1.0)
    num_inference_steps: int = Field(default=8, ge=1)
    negative_prompt: str = Field(default="text, watermark, ugly, blurry, low quality")
    timeout: float = Field(default=90.0, gt=0)
    max_retries: int = Field(default=2, ge=0, description="Extra attempts after an HTTP 500")
    retry_delay: float = Field(default=2.0, ge=0)
    max_prompt_chars: int = Field(default=500, ge=1)


class ApiConfig(BaseModel):
    """Settings shared by every chat-completion endpoint."""

    path: str = Field(default="/chat/completions", description="Appended to each model endpoint")


class StorageConfig(BaseModel):
    """Where the local image backup and CLI results are written."""

    output_dir: Path = Field(default=Path("./output"))
    images_dirname: str = Field(default="images")
    backup_images: bool = Field(default=True)

    @property
    def images_dir(self) -> Path:
        return self.output_dir / self.images_dirname


class LightAppConfig(BaseModel):
    """Top-level configuration.

    Instances are created once at process start (``load`` or ``from_env``)
    and then passed to :class:`ModelRegistry` and the orchestrator.
    """

    api: ApiConfig = Field(default_factory=ApiConfig)
    models: dict[str, ModelProfile] = Field(default_factory=dict)
    stages: dict[str, StageModelConfig] = Field(default_factory=dict)
    text2image: Optional[ImageModelConfig] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], local: dict[str, Any] | None = None
    ) -> "LightAppConfig":
        """Validate raw configuration, applying local credential overrides.

        Only ``endpoint`` and ``api_key`` of models that already exist in
        *data* are taken from *local*; unknown local models are ignored.

        Raises:
            ConfigurationError: If the merged data fails validation.
        """
        merged = json.loads(json.dumps(data))
        models = merged.setdefault("models", {})
        for key, overrides in ((local or {}).get("models") or {}).items():
            if key not in models or not isinstance(overrides, dict):
                continue
            for field_name in ("endpoint", "api_key"):
                if overrides.get(field_name):
                    models[key][field_name] = overrides[field_name]

        local_image = (local or {}).get("text2image") or {}
        if merged.get("text2image") and isinstance(local_image, dict):
            for field_name in ("endpoint", "api_key"):
                if local_image.get(field_name):
                    merged["text2image"][field_name] = local_image[field_name]

        for key, profile in models.items():
            if isinstance(profile, dict):
                profile.setdefault("key", key)

        try:
            return cls.model_validate(merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def load(cls, path: Path, local_path: Path | None = None) -> "LightAppConfig":
        """Load ``config.json`` and, if present, the local override file.

        Args:
            path: The shared configuration file.
            local_path: Override file. Defaults to ``config.local.json`` next
                to *path*; silently skipped when it does not exist.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        local_path = Path(local_path) if local_path else path.with_name("config.local.json")

        try:
            data = load_json(path)
            local = load_json(local_path) if local_path.exists() else None
        except ValueError as exc:
            raise ConfigurationError(f"Invalid configuration file: {exc}") from exc

        return cls.from_dict(data, local)

    @classmethod
    def from_env(cls) -> "LightAppConfig":
        """Build a config from environment variables.

        Recognised variables:
            LIGHTAPP_CONFIG (default ``config.json``), LIGHTAPP_LOCAL_CONFIG,
            LIGHTAPP_OUTPUT_DIR.
        """
        config_path = Path(os.environ.get("LIGHTAPP_CONFIG", "config.json"))
        local_env = os.environ.get("LIGHTAPP_LOCAL_CONFIG")
        config = cls.load(config_path, Path(local_env) if local_env else None)
        if os.environ.get("LIGHTAPP_OUTPUT_DIR"):
            config.storage.output_dir = Path(os.environ["LIGHTAPP_OUTPUT_DIR"])
        return config


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelRegistry:
    """Resolves stages to model profiles.

    The registry wraps a validated :class:`LightAppConfig` and never mutates
    it, so one instance can be shared by concurrent runs.
    """

    def __init__(self, config: LightAppConfig) -> None:
        self.config = config

    @property
    def image_config(self) -> ImageModelConfig | None:
        return self.config.text2image

    @property
    def api_path(self) -> str:
        return self.config.api.path

    def has_model(self, model_key: str | None) -> bool:
        return bool(model_key) and model_key in self.config.models

    def resolve(self, stage_id: str, explicit_model_id: str | None = None) -> ModelProfile:
        """Return the profile for *stage_id*.

        A known *explicit_model_id* wins outright.  An unknown one is
        reported and ignored in favour of the stage default.

        Raises:
            ConfigurationError: If the stage is unknown or its default
                profile is missing.
        """
        stage_config = self.config.stages.get(stage_id)
        if stage_config is None:
            raise ConfigurationError(f"Unknown stage: {stage_id}")

        if explicit_model_id:
            if self.has_model(explicit_model_id):
                return self.config.models[explicit_model_id]
            print_warning(
                f"Unknown model '{explicit_model_id}' requested for {stage_id}; "
                f"using the stage default."
            )

        profile = self.config.models.get(stage_config.model_key)
        if profile is None:
            raise ConfigurationError(
                f"Unknown model '{stage_config.model_key}' configured for stage {stage_id}"
            )
        return profile

    def describe(self) -> dict[str, Any]:
        """Caller-facing view of models and stages, without endpoints or keys."""
        models = {
            key: {"key": key, "name": m.name, "displayName": m.display_name or m.name}
            for key, m in self.config.models.items()
        }
        stages = {
            stage_id: {
                "name": s.name,
                "defaultModel": s.model_key,
                "availableModels": list(s.available_models) or list(self.config.models),
            }
            for stage_id, s in self.config.stages.items()
        }
        return {"models": models, "stages": stages}
