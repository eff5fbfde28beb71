"""
Unit tests for SDK layer.

Tests the OpenAI generation client wrapper.
"""

import base64
from unittest.mock import AsyncMock, Mock, patch

import pytest

from cinegen.core.errors import GenerationError, MalformedResponseError
from cinegen.core.prompts import STORYBOARD_SCHEMA
from cinegen.sdk.openai_client import GenerationClient


def _chat_response(content):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


def _image_response(data: bytes):
    response = Mock()
    response.data = [Mock(b64_json=base64.b64encode(data).decode("ascii"))]
    return response


class TestGenerationClientInit:
    """Test GenerationClient construction."""

    @patch('cinegen.sdk.openai_client.AsyncOpenAI')
    def test_init_success(self, mock_openai_class):
        mock_openai_class.return_value = Mock()

        client = GenerationClient(text_model="gpt-4o-mini", image_model="gpt-image-1")

        assert client.text_model == "gpt-4o-mini"
        assert client.image_model == "gpt-image-1"
        assert client.client is mock_openai_class.return_value

    def test_init_uses_given_client(self):
        provided = Mock()
        client = GenerationClient("gpt-4o-mini", "gpt-image-1", client=provided)
        assert client.client is provided

    def test_init_missing_models(self):
        with pytest.raises(ValueError, match="text_model is required"):
            GenerationClient(text_model="", image_model="gpt-image-1", client=Mock())

        with pytest.raises(ValueError, match="image_model is required"):
            GenerationClient(text_model="gpt-4o-mini", image_model=None, client=Mock())


@pytest.mark.asyncio
class TestGenerateJson:
    """Test structured JSON generation."""

    def setup_method(self):
        self.openai = Mock()
        self.openai.chat.completions.create = AsyncMock()
        self.client = GenerationClient("gpt-4o-mini", "gpt-image-1", client=self.openai)

    async def test_returns_content_and_sends_schema(self):
        self.openai.chat.completions.create.return_value = _chat_response('{"scenes": []}')

        text = await self.client.generate_json("plan it", STORYBOARD_SCHEMA, "storyboard_batch")

        assert text == '{"scenes": []}'
        kwargs = self.openai.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][1] == {"role": "user", "content": "plan it"}
        json_schema = kwargs["response_format"]["json_schema"]
        assert json_schema["name"] == "storyboard_batch"
        assert json_schema["schema"] is STORYBOARD_SCHEMA
        assert json_schema["strict"] is True

    async def test_empty_content_raises(self):
        self.openai.chat.completions.create.return_value = _chat_response(None)

        with pytest.raises(MalformedResponseError):
            await self.client.generate_json("plan it", STORYBOARD_SCHEMA, "storyboard_batch")

    async def test_provider_error_propagates(self):
        error = RuntimeError("503 Service Unavailable")
        self.openai.chat.completions.create.side_effect = error

        with pytest.raises(RuntimeError) as excinfo:
            await self.client.generate_json("plan it", STORYBOARD_SCHEMA, "storyboard_batch")
        assert excinfo.value is error


@pytest.mark.asyncio
class TestGenerateImage:
    """Test image generation with and without a reference image."""

    def setup_method(self):
        self.openai = Mock()
        self.openai.images.generate = AsyncMock(return_value=_image_response(b"png-bytes"))
        self.openai.images.edit = AsyncMock(return_value=_image_response(b"edited"))
        self.client = GenerationClient("gpt-4o-mini", "gpt-image-1", client=self.openai)

    async def test_generate_without_reference(self):
        image = await self.client.generate_image("a portrait", size="1024x1024")

        assert image == b"png-bytes"
        self.openai.images.generate.assert_awaited_once_with(
            model="gpt-image-1", prompt="a portrait", size="1024x1024"
        )
        self.openai.images.edit.assert_not_called()

    async def test_generate_with_reference_uses_edit(self):
        image = await self.client.generate_image("a scene", reference_image=b"ref")

        assert image == b"edited"
        kwargs = self.openai.images.edit.call_args.kwargs
        assert kwargs["image"] == ("reference.png", b"ref", "image/png")
        assert kwargs["size"] == "1536x1024"
        self.openai.images.generate.assert_not_called()

    async def test_no_image_raises(self):
        empty = Mock()
        empty.data = []
        self.openai.images.generate.return_value = empty

        with pytest.raises(GenerationError, match="No image generated"):
            await self.client.generate_image("a portrait")
