"""
OpenAI-backed generation client.

Requests strictly-typed JSON for storyboard planning and raw image bytes
for portraits and scene images.
"""

import base64
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from ..core.errors import GenerationError, MalformedResponseError


class GenerationClient:
    """Thin async wrapper over the OpenAI API.

    Provider errors propagate without modification so the retry wrapper can
    inspect their status codes.
    """

    def __init__(
        self,
        text_model: str,
        image_model: str,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the generation client.

        Args:
            text_model: Model used for structured JSON output (required)
            image_model: Model used for image generation (required)
            client: Preconfigured AsyncOpenAI client; one is created from
                the environment when omitted

        Raises:
            ValueError: If a model name is missing/empty
        """
        if not text_model or not text_model.strip():
            raise ValueError("text_model is required and cannot be empty")
        if not image_model or not image_model.strip():
            raise ValueError("image_model is required and cannot be empty")

        self.text_model = text_model
        self.image_model = image_model
        self.client = client or AsyncOpenAI()

    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        schema_name: str,
        system: str = "Respond with JSON only."
    ) -> str:
        """Generate a response constrained to ``schema``.

        Returns:
            The raw JSON text of the response

        Raises:
            MalformedResponseError: If the response carries no content
            OpenAI API errors: Propagated without modification
        """
        response = await self.client.chat.completions.create(
            model=self.text_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt}
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema, "strict": True}
            }
        )

        if not response.choices or not response.choices[0].message.content:
            raise MalformedResponseError()
        return response.choices[0].message.content

    async def generate_image(
        self,
        prompt: str,
        size: str = "1536x1024",
        reference_image: Optional[bytes] = None
    ) -> bytes:
        """Generate one image, optionally conditioned on a reference image.

        Returns:
            PNG image data as bytes

        Raises:
            GenerationError: If no image came back
            OpenAI API errors: Propagated without modification
        """
        if reference_image is not None:
            response = await self.client.images.edit(
                model=self.image_model,
                image=("reference.png", reference_image, "image/png"),
                prompt=prompt,
                size=size
            )
        else:
            response = await self.client.images.generate(
                model=self.image_model,
                prompt=prompt,
                size=size
            )

        if not response.data or not response.data[0].b64_json:
            raise GenerationError("No image generated")
        return base64.b64decode(response.data[0].b64_json)
