import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from chatstream.config import ModelConfig
from chatstream.errors import DecodeError, TransportError
from chatstream.streaming import StreamChunk

logger = logging.getLogger(__name__)


class ChatProvider:
    """Source of streamed chat-completion chunks.

    Subclasses implement :meth:`stream`; tests substitute a provider that
    yields pre-queued chunks.
    """

    system: str = "openai"

    async def stream(self, payload: dict[str, Any]) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError
        yield  # pragma: no cover


class OpenAIProvider(ChatProvider):
    """Streams chat completions through :class:`openai.AsyncOpenAI`.

    Works with any OpenAI-compatible server; the endpoint, headers and
    timeout come from the :class:`ModelConfig`.  The SDK's own retries are
    disabled so a failure surfaces immediately as :class:`TransportError`.
    """

    def __init__(self, config: ModelConfig):
        self.config = config
        self.base_url = config.validate_for_request()
        self.client = AsyncOpenAI(
            api_key=config.token,
            base_url=self.base_url,
            organization=config.organization_id,
            default_headers=config.headers,
            timeout=config.request_timeout,
            max_retries=0,
        )

    async def stream(self, payload: dict[str, Any]) -> AsyncIterator[StreamChunk]:
        body = dict(payload)
        model = body.pop("model")
        messages = body.pop("messages")
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
                extra_body=body or None,
            )
        except openai.APIStatusError as e:
            logger.warning(f"Request rejected with HTTP {e.status_code}: {e}")
            raise TransportError(
                "invalid response", status_code=e.status_code, body=e.response.text,
            ) from e
        except openai.APIConnectionError as e:
            logger.warning(f"Request failed: {e}")
            raise TransportError(f"request failed: {e}") from e

        try:
            async for chunk in response:
                yield StreamChunk.from_openai(chunk)
        except openai.APIStatusError as e:
            logger.warning(f"Stream rejected with HTTP {e.status_code}: {e}")
            raise TransportError(
                "invalid response", status_code=e.status_code, body=e.response.text,
            ) from e
        except openai.APIConnectionError as e:
            logger.warning(f"Stream interrupted: {e}")
            raise TransportError(f"stream interrupted: {e}") from e
        except (openai.APIError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Could not decode stream chunk: {e}")
            raise DecodeError(f"could not decode stream chunk: {e}") from e
        finally:
            await response.close()
