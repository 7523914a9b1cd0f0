"""LightApp pipeline orchestrator.

Drives the generation stages:

stage1   PM       -- user request to a structured requirement document.
stage1_5 Artist   -- cover image and, for games, a game-over image.
stage2   Dev      -- first working code.
stage3   Tester   -- edge cases and bug fixes.
stage4   Designer -- visual polish.
stage5   Refine   -- conversational change requests on existing code.

Two modes: :meth:`Orchestrator.run_stage` runs one stage for a caller that
drives the sequence itself; :meth:`Orchestrator.run_sequence` runs a list of
stages back to back and stops at the first failure.

Usage::

    python -m lightapp.orchestrator "a tap-to-jump game"
    python -m lightapp.orchestrator "a pomodoro timer" --stages stage1,stage2 -o ./out
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from rich.panel import Panel

from lightapp.config import ConfigurationError, LightAppConfig, ModelProfile, ModelRegistry
from lightapp.extractor import ExtractionError
from lightapp.image_client import ImageGenerationClient
from lightapp.llm_client import CompletionClient, UpstreamError
from lightapp.models import (
    CodeArtifact,
    ImageRef,
    ImageRole,
    PipelineRun,
    RequirementDocument,
    SequenceResult,
    StageInputs,
    StageKind,
    StageOutput,
)
from lightapp.prompts import PromptLibrary
from lightapp.stages import (
    IMAGE_PROMPT_SHAPE,
    PipelineStageRunner,
    StageInputError,
    get_stage,
    validate_output,
)
from lightapp.storage import FileImageStore, ImageStore, MemoryImageStore
from lightapp.utils import (
    console,
    format_duration,
    make_request_id,
    print_error,
    print_info,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
    save_json,
    tag,
    truncate,
)

IMAGE_STAGE_ID = "stage1_5"
REFINE_STAGE_ID = "stage5"


class Orchestrator:
    """Sequences stages and threads their outputs.

    Attributes:
        registry: Shared, read-only model registry.
        runner: Runs individual text stages.
        images: Generates and stores images for the image stage.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        runner: PipelineStageRunner,
        images: ImageGenerationClient,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.images = images

    # ------------------------------------------------------------------
    # Single-stage mode
    # ------------------------------------------------------------------

    async def run_stage(
        self,
        stage_id: str,
        prompt: str,
        existing_artifact: CodeArtifact | None = None,
        requirement_document: RequirementDocument | None = None,
        model_override: str | None = None,
        run_id: str | None = None,
    ) -> StageOutput:
        """Run exactly one stage; errors propagate to the caller."""
        stage = get_stage(stage_id)
        run_id = run_id or make_request_id()
        print_stage_header(run_id, stage_id, stage.name)

        if stage.kind is StageKind.IMAGE:
            if requirement_document is None:
                raise StageInputError(f"{stage_id} needs the requirement document from stage1")
            document = await self.run_image_stage(
                requirement_document, model_override=model_override, run_id=run_id
            )
            artifact = existing_artifact or CodeArtifact(
                display_name=document.app_name,
                description=document.description or document.app_description,
            )
            return StageOutput(stage_id=stage_id, artifact=artifact, requirement_document=document)

        inputs = StageInputs(
            prompt=prompt or "",
            requirement_document=requirement_document,
            artifact=existing_artifact,
        )
        return await self.runner.run(stage_id, inputs, model_override=model_override, run_id=run_id)

    async def refine(
        self,
        instruction: str,
        artifact: CodeArtifact | None,
        requirement_document: RequirementDocument | None = None,
        original_prompt: str = "",
        model_override: str | None = None,
        run_id: str | None = None,
    ) -> StageOutput:
        """Apply a change request to existing code.

        Raises:
            StageInputError: If *instruction* is blank or *artifact* carries
                no code.
        """
        if not instruction or not instruction.strip():
            raise StageInputError("Refine needs a non-empty instruction")
        if artifact is None or not artifact.has_code():
            raise StageInputError("Refine needs an artifact with at least one code payload")

        run_id = run_id or make_request_id()
        print_stage_header(run_id, REFINE_STAGE_ID, get_stage(REFINE_STAGE_ID).name)
        print_info(tag(run_id, REFINE_STAGE_ID), f"Instruction: {truncate(instruction, 100)}")

        inputs = StageInputs(
            prompt=original_prompt or "",
            requirement_document=requirement_document,
            artifact=artifact,
            instruction=instruction,
        )
        return await self.runner.run(
            REFINE_STAGE_ID, inputs, model_override=model_override, run_id=run_id
        )

    # ------------------------------------------------------------------
    # Image stage
    # ------------------------------------------------------------------

    async def _image_prompt(
        self,
        template: str,
        profile: ModelProfile,
        document: RequirementDocument,
        prefix: str,
    ) -> dict[str, Any]:
        """Ask the text model for an image prompt; failures yield ``{}``."""
        try:
            value = await self.runner.ask(template, profile, prefix, doc=document)
            return validate_output(IMAGE_STAGE_ID, IMAGE_PROMPT_SHAPE, value)
        except (UpstreamError, ExtractionError) as exc:
            print_warning(f"{prefix} Could not get an image prompt: {exc}")
            return {}

    async def run_image_stage(
        self,
        requirement_document: RequirementDocument,
        model_override: str | None = None,
        run_id: str | None = None,
    ) -> RequirementDocument:
        """Generate the cover (and, for games, game-over) image.

        Every step tolerates failure.  The returned copy of the document
        carries whatever subset of prompts, caption, and image references
        succeeded; partial success is normal.

        Raises:
            ConfigurationError: If no text model can be resolved for the
                image stage.
        """
        run_id = run_id or make_request_id()
        prefix = tag(run_id, IMAGE_STAGE_ID)
        profile = self.registry.resolve(IMAGE_STAGE_ID, model_override)
        started = time.monotonic()

        print_info(prefix, f"[Step 1] Cover image prompt (model: {profile.label})")
        cover = await self._image_prompt(
            "cover_image", profile, requirement_document, tag(run_id, IMAGE_STAGE_ID, "cover")
        )
        cover_prompt = cover.get("prompt")

        game_over_prompt: str | None = None
        roast_text: str | None = None
        if requirement_document.is_game:
            print_info(prefix, f"[Step 2] Game-over image prompt (model: {profile.label})")
            game_over = await self._image_prompt(
                "game_over_image",
                profile,
                requirement_document,
                tag(run_id, IMAGE_STAGE_ID, "gameover"),
            )
            game_over_prompt = game_over.get("prompt")
            roast_text = game_over.get("roastText")

        cover_ref: ImageRef | None = None
        if cover_prompt:
            print_info(prefix, "[Step 3] Generating cover image")
            cover_ref = await self.images.generate(cover_prompt, run_id, ImageRole.COVER)

        game_over_ref: ImageRef | None = None
        if game_over_prompt:
            print_info(prefix, "[Step 4] Generating game-over image")
            game_over_ref = await self.images.generate(game_over_prompt, run_id, ImageRole.GAME_OVER)

        print_success(
            f"{prefix} hasCover={cover_ref is not None}, hasGameOver={game_over_ref is not None} "
            f"({format_duration(time.monotonic() - started)})"
        )
        return requirement_document.with_images(
            cover_prompt=cover_prompt,
            game_over_prompt=game_over_prompt,
            roast_text=roast_text,
            cover=cover_ref,
            game_over=game_over_ref,
        )

    # ------------------------------------------------------------------
    # Full-sequence mode
    # ------------------------------------------------------------------

    async def run_sequence(
        self,
        prompt: str,
        stage_ids: Sequence[str],
        run_id: str | None = None,
    ) -> SequenceResult:
        """Run *stage_ids* in order, threading document and artifact.

        Stops at the first failing stage.  The result then carries the last
        fully validated artifact, the stages that completed, the failing
        stage, and its error.

        Raises:
            ConfigurationError: If a stage id is unknown; raised before any
                model call is made.
            StageInputError: If *prompt* is blank.
        """
        stages = [get_stage(stage_id) for stage_id in stage_ids]
        if not prompt or not prompt.strip():
            raise StageInputError("A full-sequence run needs a prompt")

        run = PipelineRun(run_id=run_id or make_request_id(), prompt=prompt)
        sequence_start = time.monotonic()

        console.print(
            Panel(
                f"[bold bright_cyan]LightApp Pipeline[/bold bright_cyan]\n"
                f"Run    : {run.run_id}\n"
                f"Prompt : {truncate(prompt, 60)}\n"
                f"Stages : {', '.join(s.id for s in stages)}",
                title="[bold]Pipeline Start[/bold]",
                border_style="bright_cyan",
            )
        )

        for stage in stages:
            stage_start = time.monotonic()
            try:
                output = await self._run_sequence_stage(stage.id, run)
            except (UpstreamError, ExtractionError, StageInputError, ConfigurationError) as exc:
                print_error(
                    f"{tag(run.run_id, stage.id)} FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                self._print_summary(run, stage.id, time.monotonic() - sequence_start)
                return SequenceResult(
                    run_id=run.run_id,
                    artifact=run.artifact,
                    requirement_document=run.requirement_document,
                    completed_stages=list(run.completed_stages),
                    failed_stage=stage.id,
                    error=exc,
                )
            run.apply(output)

        self._print_summary(run, None, time.monotonic() - sequence_start)
        return SequenceResult(
            run_id=run.run_id,
            artifact=run.artifact,
            requirement_document=run.requirement_document,
            completed_stages=list(run.completed_stages),
        )

    async def _run_sequence_stage(self, stage_id: str, run: PipelineRun) -> StageOutput:
        if get_stage(stage_id).kind is StageKind.IMAGE:
            return await self.run_stage(
                stage_id,
                run.prompt,
                existing_artifact=run.artifact,
                requirement_document=run.requirement_document,
                run_id=run.run_id,
            )
        print_stage_header(run.run_id, stage_id, get_stage(stage_id).name)
        return await self.runner.run(stage_id, run.inputs(), run_id=run.run_id)

    def _print_summary(self, run: PipelineRun, failed_stage: str | None, elapsed: float) -> None:
        rows = {stage_id: "done" for stage_id in run.completed_stages}
        if failed_stage:
            rows[failed_stage] = "failed"
        rows["Total time"] = format_duration(elapsed)
        print_summary_table(rows, title=f"Run {run.run_id}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe(self) -> dict[str, Any]:
        """Models and stages available to callers, without credentials."""
        return self.registry.describe()


def build_orchestrator(
    config: LightAppConfig,
    store: ImageStore | None = None,
) -> Orchestrator:
    """Wire an :class:`Orchestrator` from configuration.

    Args:
        config: Validated configuration.
        store: Durable image store.  Defaults to an in-memory store, which
            only grows and suits one-shot processes such as the CLI; a
            long-lived host should pass its own store.  The file backup
            under ``storage.images_dir`` is added when
            ``storage.backup_images`` is set.
    """
    registry = ModelRegistry(config)
    runner = PipelineStageRunner(
        registry,
        client=CompletionClient(api_path=registry.api_path),
        prompts=PromptLibrary(),
    )
    backup = FileImageStore(config.storage.images_dir) if config.storage.backup_images else None
    images = ImageGenerationClient(
        registry.image_config,
        store=store or MemoryImageStore(),
        backup=backup,
    )
    return Orchestrator(registry, runner, images)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """CLI entry point for ``python -m lightapp.orchestrator``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="LightApp pipeline -- turn a one-line request into a small web app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            '  python -m lightapp.orchestrator "a tap-to-jump game"\n'
            '  python -m lightapp.orchestrator "a unit converter" --stages stage1,stage2\n'
            '  python -m lightapp.orchestrator "a drawing board" -c ./config.json -o ./out\n'
        ),
    )
    parser.add_argument("prompt", help="The user request to build an app for")
    parser.add_argument(
        "--config", "-c",
        default="config.json",
        help="Path to config.json (default: config.json)",
    )
    parser.add_argument(
        "--stages",
        default="stage1,stage1_5,stage2",
        help="Comma-separated stage ids to run (default: stage1,stage1_5,stage2)",
    )
    parser.add_argument(
        "--output", "-o",
        default=None,
        help="Output directory for the result and backup images (default: from config)",
    )

    args = parser.parse_args()

    try:
        config = LightAppConfig.load(Path(args.config))
    except ConfigurationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    if args.output:
        config.storage.output_dir = Path(args.output)

    stage_ids = [s.strip() for s in args.stages.split(",") if s.strip()]
    orchestrator = build_orchestrator(config)

    try:
        result = asyncio.run(orchestrator.run_sequence(args.prompt, stage_ids))
    except (ConfigurationError, StageInputError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    result_path = config.storage.output_dir / f"{result.run_id}.json"
    asyncio.run(save_json(result.to_dict(), result_path))
    console.print(f"Result written to {result_path}")

    if result.success:
        console.print("[bold green]Pipeline completed successfully![/bold green]")
    else:
        console.print("[bold red]Pipeline failed.[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
