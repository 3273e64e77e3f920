import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List

import httpx
from openai import AsyncOpenAI, OpenAIError

from ..errors import TransportError
from ..models import Message, Provider, StreamDelta, ToolCallDelta

logger = logging.getLogger(__name__)


class ProviderTransport(ABC):
    """Streams one model response for a resolved provider/model."""

    @abstractmethod
    def stream(
        self,
        provider: Provider,
        model_id: str,
        messages: List[Message],
        tool_schemas: List[Dict[str, Any]],
    ) -> AsyncIterator[StreamDelta]:
        """Yield deltas until the response is complete.

        Raises:
            TransportError: auth, network or protocol failure. Never used for
                conversational content.
        """


def to_openai_message(message: Message) -> Dict[str, Any]:
    """Chat-completions wire shape. Reasoning stays local to the conversation."""
    data = message.to_dict()
    data.pop("reasoning_content", None)
    return data


def chunk_to_delta(chunk: Any, ids_by_index: Dict[int, str]) -> StreamDelta | None:
    """Convert one ``ChatCompletionChunk`` into a ``StreamDelta``.

    OpenAI-compatible APIs send the tool call id only on the first fragment
    and correlate the rest by ``index``; ``ids_by_index`` carries that mapping
    across chunks of the same response.

    Returns:
        StreamDelta, or None when the chunk carries nothing to accumulate.
    """
    if not chunk.choices:
        return None
    delta = chunk.choices[0].delta
    if delta is None:
        return None

    reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None) or ""
    fragments: List[ToolCallDelta] = []
    for tc in delta.tool_calls or []:
        index = tc.index if tc.index is not None else 0
        if tc.id:
            ids_by_index[index] = tc.id
        call_id = ids_by_index.setdefault(index, f"call_{index}")
        function = tc.function
        fragments.append(
            ToolCallDelta(
                id=call_id,
                name=(function.name or "") if function else "",
                arguments=(function.arguments or "") if function else "",
            )
        )

    content = delta.content or ""
    if not content and not reasoning and not fragments:
        return None
    return StreamDelta(content=content, reasoning=str(reasoning), tool_calls=fragments)


class OpenAITransport(ProviderTransport):
    """Transport for any OpenAI-compatible chat completions endpoint."""

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client(self, provider: Provider) -> AsyncOpenAI:
        client = self._clients.get(provider.id)
        if client is None:
            client = AsyncOpenAI(
                api_key=provider.api_key or "none",
                base_url=provider.base_url,
                timeout=self._timeout,
                default_headers=provider.extra.get("headers"),
            )
            self._clients[provider.id] = client
        return client

    async def stream(
        self,
        provider: Provider,
        model_id: str,
        messages: List[Message],
        tool_schemas: List[Dict[str, Any]],
    ) -> AsyncIterator[StreamDelta]:
        kwargs: Dict[str, Any] = {}
        if tool_schemas:
            kwargs["tools"] = tool_schemas
            kwargs["tool_choice"] = "auto"
        for key, value in provider.extra.get("request", {}).items():
            kwargs.setdefault(key, value)

        logger.debug("Requesting %s/%s with %d messages", provider.id, model_id, len(messages))
        ids_by_index: Dict[int, str] = {}
        try:
            response = await self._client(provider).chat.completions.create(
                model=model_id,
                messages=[to_openai_message(m) for m in messages],
                stream=True,
                **kwargs,
            )
            async for chunk in response:
                delta = chunk_to_delta(chunk, ids_by_index)
                if delta is not None:
                    yield delta
        except (OpenAIError, httpx.HTTPError, TimeoutError, ConnectionError) as e:
            logger.warning("Provider %s request failed: %s", provider.id, e)
            raise TransportError(f"{provider.id}/{model_id}: {e}") from e

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
