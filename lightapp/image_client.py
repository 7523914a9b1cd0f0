"""Text-to-image client with bounded retry.

One :meth:`ImageGenerationClient.generate` call produces at most one image
for a ``(run_id, role)`` pair.  Only HTTP 500 is retried (``max_retries``
extra attempts, ``retry_delay`` seconds apart); every other failure ends the
call.  Failures are never raised to the caller: they are logged and turned
into ``None`` so the pipeline simply continues without that image.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import random
import time
from typing import Any

import httpx

from lightapp.config import ImageModelConfig
from lightapp.models import ImageArtifact, ImageRef, ImageRole
from lightapp.storage import ImageStore
from lightapp.utils import format_duration, print_info, print_success, print_warning, tag, truncate

_SEED_RANGE = 100_000
_STORED_PROMPT_CHARS = 200


class ImageGenerationFailure(Exception):
    """One image attempt failed.

    Only used inside this module; :meth:`ImageGenerationClient.generate`
    downgrades it to ``None``.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status == 500


class ImageGenerationClient:
    """Calls the text-to-image endpoint and persists the result.

    Args:
        config: Image model settings; ``None`` disables image generation.
        store: Durable sink. An image that cannot be stored here is treated
            as not generated, since its reference would dangle.
        backup: Optional best-effort secondary sink.
        rng: Source of request seeds.
    """

    def __init__(
        self,
        config: ImageModelConfig | None,
        store: ImageStore,
        backup: ImageStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.backup = backup
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        assert self.config is not None
        return httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout, connect=10.0))

    def build_payload(self, prompt: str) -> dict[str, Any]:
        """Request body for one attempt; every attempt draws a fresh seed."""
        assert self.config is not None
        return {
            "model": self.config.model,
            "prompt": prompt[: self.config.max_prompt_chars],
            "negative_prompt": self.config.negative_prompt,
            "size": self.config.size,
            "true_cfg_scale": self.config.true_cfg_scale,
            "num_inference_steps": self.config.num_inference_steps,
            "seed": self.rng.randrange(_SEED_RANGE),
        }

    async def _attempt(self, prompt: str) -> str:
        """Make one request and return the base64 payload.

        Raises:
            ImageGenerationFailure: For any non-200 status, transport error,
                timeout, or malformed body.
        """
        assert self.config is not None
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            async with self._client() as client:
                response = await client.post(
                    self.config.endpoint, json=self.build_payload(prompt), headers=headers
                )
        except httpx.TimeoutException as exc:
            raise ImageGenerationFailure(f"Request timed out after {self.config.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ImageGenerationFailure(f"Request failed: {exc}") from exc

        if response.status_code != 200:
            raise ImageGenerationFailure(
                f"Image API returned {response.status_code}: {truncate(response.text, 200)}",
                status=response.status_code,
            )

        try:
            data = response.json()
            b64 = data["data"][0]["b64_json"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ImageGenerationFailure(
                f"Unexpected image response: {truncate(response.text, 200)}"
            ) from exc
        if not isinstance(b64, str) or not b64:
            raise ImageGenerationFailure("Image response has an empty payload")
        return b64

    async def _persist(self, image: ImageArtifact, prefix: str) -> bool:
        try:
            await self.store.save(image)
        except Exception as exc:  # noqa: BLE001
            print_warning(f"{prefix} Could not store image {image.image_id}: {exc}")
            return False

        if self.backup is not None:
            try:
                await self.backup.save(image)
            except Exception as exc:  # noqa: BLE001
                print_warning(f"{prefix} Image backup failed for {image.image_id}: {exc}")
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, prompt: str, run_id: str, role: ImageRole) -> ImageRef | None:
        """Generate, store, and reference one image.

        Returns:
            An :class:`ImageRef`, or ``None`` if the image could not be
            produced or stored.  Never raises for upstream failures.
        """
        prefix = tag(run_id, role.value)
        if self.config is None:
            print_warning(f"{prefix} No text-to-image model configured; skipping image")
            return None
        if not prompt or not prompt.strip():
            return None

        started = time.monotonic()
        attempts = self.config.max_retries + 1
        b64: str | None = None

        for attempt in range(1, attempts + 1):
            suffix = f" (retry {attempt - 1}/{self.config.max_retries})" if attempt > 1 else ""
            print_info(prefix, f"Generating {role.value} image{suffix}: {truncate(prompt, 80)}")
            try:
                b64 = await self._attempt(prompt)
                break
            except ImageGenerationFailure as exc:
                print_warning(f"{prefix} {exc}")
                if exc.retryable and attempt < attempts:
                    print_info(prefix, f"Retrying in {self.config.retry_delay:g}s")
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None

        if b64 is None:
            return None

        try:
            data = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            print_warning(f"{prefix} Image payload is not valid base64: {exc}")
            return None

        image = ImageArtifact(
            image_id=ImageArtifact.make_id(run_id, role),
            role=role,
            run_id=run_id,
            data=data,
            prompt=prompt[:_STORED_PROMPT_CHARS],
        )
        if not await self._persist(image, prefix):
            return None

        print_success(
            f"{prefix} {role.value} image saved as {image.image_id} "
            f"({len(b64) // 1024}KB, {format_duration(time.monotonic() - started)})"
        )
        return ImageRef.for_image(image.image_id, role)
