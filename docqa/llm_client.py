"""OpenAI-compatible LLM client wrappers with retry and timeout handling."""
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from docqa import config
from docqa.errors import GenerationServiceUnavailable
from docqa.retry import RetryPolicy, async_retrying
from docqa.schemas import ChatCompletionChunk, ChatCompletionResponse, ModelList

logger = structlog.get_logger()

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class OpenAICompatClient:
    """Base for clients of an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL, e.g. ``http://localhost:11434/v1``
            timeout: Request timeout in seconds (default from config)
            retry_policy: Backoff settings for transient failures
            http_client: Shared httpx client; a short-lived one is opened per
                request when omitted
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def aclose(self) -> None:
        """Close the shared http client, if any."""
        if self._http_client is not None:
            await self._http_client.aclose()

    async def list_models(self) -> List[str]:
        """List model ids served by the endpoint.

        Raises:
            httpx.HTTPError: On API errors
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/models", timeout=min(self.timeout, 5.0)
                )
                response.raise_for_status()
                return [m.id for m in ModelList.model_validate(response.json()).data]
        except httpx.HTTPError as e:
            logger.error("list_models_error", base_url=self.base_url, error=str(e))
            raise


class GenerationClient(OpenAICompatClient):
    """Async client for the chat-completion endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or config.GENERATION_BASE_URL, **kwargs)
        self.model = model or config.CHAT_MODEL

    def _payload(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str],
        stream: bool,
        temperature: Optional[float],
    ) -> Dict:
        payload = {
            "model": model or self.model,
            "messages": messages,
            "stream": stream,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to the client's model)
            temperature: Sampling temperature

        Returns:
            The assistant message content, unmodified

        Raises:
            GenerationServiceUnavailable: When the service keeps failing or
                answers with something that is not a chat completion
        """
        payload = self._payload(messages, model, False, temperature)
        retrying = async_retrying(self.retry_policy)

        logger.info(
            "chat_request",
            model=payload["model"],
            message_count=len(messages),
        )

        try:
            async with self._client() as client:
                async for attempt in retrying:
                    with attempt:
                        response = await client.post(
                            f"{self.base_url}/chat/completions",
                            json=payload,
                        )
                        response.raise_for_status()
                        data = response.json()
        except httpx.HTTPError as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            status_code = getattr(getattr(e, "response", None), "status_code", None)
            logger.error(
                "chat_request_failed",
                error=str(e),
                status_code=status_code,
                attempts=attempts,
            )
            raise GenerationServiceUnavailable(
                f"Chat completion failed: {e}",
                attempts=attempts,
                status_code=status_code,
            ) from e
        except ValueError as e:
            raise GenerationServiceUnavailable(
                f"Chat completion response is not valid JSON: {e}"
            ) from e

        try:
            completion = ChatCompletionResponse.model_validate(data)
        except ValidationError as e:
            raise GenerationServiceUnavailable(
                f"Malformed chat completion response: {e}"
            ) from e

        logger.info(
            "chat_response",
            model=completion.model or payload["model"],
            response_length=len(completion.content),
        )

        return completion.content

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text fragments.

        Retries only cover opening the stream. Once fragments have been
        yielded, a failure is raised as-is to the consumer.

        Yields:
            Content fragments in arrival order

        Raises:
            GenerationServiceUnavailable: When the stream cannot be opened or breaks
        """
        payload = self._payload(messages, model, True, temperature)
        retrying = async_retrying(self.retry_policy)
        url = f"{self.base_url}/chat/completions"

        logger.info("chat_stream_request", model=payload["model"], message_count=len(messages))

        try:
            async with self._client() as client:
                response = None
                async for attempt in retrying:
                    with attempt:
                        request = client.build_request("POST", url, json=payload)
                        response = await client.send(request, stream=True)
                        if response.is_error:
                            await response.aread()
                            await response.aclose()
                        response.raise_for_status()

                fragment_count = 0
                try:
                    async for line in response.aiter_lines():
                        fragment = self._parse_sse_line(line)
                        if fragment is None:
                            break
                        if fragment:
                            fragment_count += 1
                            yield fragment
                finally:
                    await response.aclose()

                logger.info("chat_stream_completed", fragment_count=fragment_count)

        except httpx.HTTPError as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.error("chat_stream_failed", error=str(e), attempts=attempts)
            raise GenerationServiceUnavailable(
                f"Chat completion stream failed: {e}", attempts=attempts
            ) from e

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[str]:
        """Extract the content fragment from one SSE line.

        Returns None at the end-of-stream marker and "" for lines that carry
        no content (comments, keep-alives, role-only deltas).
        """
        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return ""
        data = line[len(SSE_DATA_PREFIX):].strip()
        if data == SSE_DONE:
            return None
        try:
            return ChatCompletionChunk.model_validate(json.loads(data)).content
        except (json.JSONDecodeError, ValidationError) as e:
            raise GenerationServiceUnavailable(f"Malformed stream event: {data[:100]}") from e
