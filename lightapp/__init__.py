"""LightApp pipeline core.

Turns a one-line user request into a small single-page web app by running a
sequence of generative-model stages, with an image sub-pipeline between the
requirements and code stages.

Key classes:
    Orchestrator            - Single-stage, image-stage, and full-sequence runs
    PipelineStageRunner     - One text stage: prompt, invoke, extract, merge
    ModelRegistry           - Stage to model profile resolution
    CompletionClient        - Chat-completion HTTP calls
    ImageGenerationClient   - Text-to-image calls with HTTP 500 retry
"""

from .config import ConfigurationError, LightAppConfig, ModelProfile, ModelRegistry
from .extractor import ExtractionError, extract_json
from .image_client import ImageGenerationClient
from .llm_client import CompletionClient, UpstreamError
from .models import (
    AppType,
    CodeArtifact,
    ImageArtifact,
    ImageRef,
    ImageRole,
    RequirementDocument,
    SequenceResult,
    StageOutput,
)
from .orchestrator import Orchestrator, build_orchestrator
from .stages import STAGES, PipelineStageRunner, StageInputError
from .storage import FileImageStore, ImageStore, MemoryImageStore

__all__ = [
    # Configuration
    "LightAppConfig",
    "ModelProfile",
    "ModelRegistry",
    "ConfigurationError",
    # Clients
    "CompletionClient",
    "UpstreamError",
    "ImageGenerationClient",
    # Extraction
    "extract_json",
    "ExtractionError",
    # Values
    "AppType",
    "CodeArtifact",
    "ImageArtifact",
    "ImageRef",
    "ImageRole",
    "RequirementDocument",
    "SequenceResult",
    "StageOutput",
    # Stages and orchestration
    "STAGES",
    "PipelineStageRunner",
    "StageInputError",
    "Orchestrator",
    "build_orchestrator",
    # Storage
    "ImageStore",
    "FileImageStore",
    "MemoryImageStore",
]
