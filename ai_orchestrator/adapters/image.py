"""Image generation adapter (DALL-E 3 via litellm.aimage_generation).

Units are images: input_units is 0 and output_units is the number of
images returned, which the catalog prices per image.
"""

from __future__ import annotations

from typing import Any

import litellm

from ai_orchestrator.adapters.base import BackendAdapter
from ai_orchestrator.errors import TransientProviderError
from ai_orchestrator.model_router.catalog import ModelDescriptor
from ai_orchestrator.model_router.types import AIRequest, AIResponse


class ImageGenerationAdapter(BackendAdapter):
    def __init__(
        self,
        *,
        timeout_seconds: float = 60.0,
        api_key: str | None = None,
        size: str = "1024x1024",
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, api_key=api_key)
        self._size = size

    async def _call(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        response = await litellm.aimage_generation(
            model=descriptor.litellm_model,
            prompt=request.message,
            n=descriptor.max_output_units,
            size=self._size,
            **self._key_kwargs(),
        )

        images = tuple(self._image_ref(item) for item in (_data(response) or []))
        images = tuple(ref for ref in images if ref)
        if not images:
            raise TransientProviderError(
                f"{descriptor.name} returned no images", backend=descriptor.name
            )
        return AIResponse(
            content=images[0],
            backend=descriptor.name,
            confidence=descriptor.default_confidence,
            input_units=0,
            output_units=len(images),
            images=images,
        )

    @staticmethod
    def _image_ref(item: Any) -> str:
        if isinstance(item, dict):
            url, b64 = item.get("url"), item.get("b64_json")
        else:
            url, b64 = getattr(item, "url", None), getattr(item, "b64_json", None)
        if url:
            return str(url)
        if b64:
            return f"data:image/png;base64,{b64}"
        return ""


def _data(response: Any) -> Any:
    if isinstance(response, dict):
        return response.get("data")
    return getattr(response, "data", None)
