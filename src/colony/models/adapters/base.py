"""Base adapter classes for model wire dialects."""

import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from colony.agents.exceptions import (
    APIErrorClassification,
    ModelAPIError,
    ModelError,
    ModelResponseError,
)
from colony.models.dialects import WireDialect
from colony.models.response_models import (
    STREAM_ENDED,
    DoneChunk,
    ErrorChunk,
    StreamChunk,
    UnifiedCompletionResult,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Union[None, Awaitable[None]]]


@dataclass
class CompletionRequest:
    """Everything an adapter needs to build one outbound call."""
    conversation: List[Dict[str, Any]]
    system_prompt: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    previous_response_id: Optional[str] = None
    store: Optional[bool] = None
    integrations: Optional[List[Dict[str, Any]]] = None
    max_tokens: Optional[int] = None


@dataclass
class PreparedRequest:
    """A dialect-correct request, ready to send."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


@dataclass
class ServerSentEvent:
    event: Optional[str]
    data: str

    def json(self) -> Any:
        return json.loads(self.data)


async def aiter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """
    Turn a line iterator into server-sent events.

    Each ``data:`` line is dispatched as one event carrying the most recent
    ``event:`` name. None of the supported servers split a payload across
    several data lines, and dispatching per line keeps parsing correct even
    when the transport drops the blank separator lines.
    """
    event_name = None
    async for line in lines:
        if not line:
            event_name = None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            yield ServerSentEvent(event=event_name, data=value)
            event_name = None


class StreamState(ABC):
    """
    Incremental state machine for one streamed response.

    ``feed`` consumes one event and queues chunks for the caller; ``finish``
    resolves the accumulated state into the same result the non-streaming
    parser would produce.
    """

    def __init__(self, adapter: "APIProviderAdapter"):
        self.adapter = adapter
        self.finished = False
        self.received = False
        self._outbox: List[StreamChunk] = []

    def emit(self, chunk: StreamChunk) -> None:
        self._outbox.append(chunk)

    def drain(self) -> List[StreamChunk]:
        chunks, self._outbox = self._outbox, []
        return chunks

    def feed(self, event: ServerSentEvent) -> None:
        self.received = True
        self.handle_event(event)

    def stream_error(self, message: str) -> ModelAPIError:
        return ModelAPIError(
            message=message,
            provider=self.adapter.provider,
            api_endpoint=self.adapter.get_endpoint_url(),
            classification=APIErrorClassification.STREAM_ERROR.value,
        )

    @property
    def complete(self) -> bool:
        """Whether the stream delivered its terminal event."""
        return self.finished

    def finish(self) -> UnifiedCompletionResult:
        if not self.received:
            return self.degraded_result()
        if not self.complete:
            text, reasoning = self.partial_output()
            return self.degraded_result(text=text, reasoning=reasoning)
        return self.build_result()

    def partial_output(self) -> Tuple[Optional[str], Optional[str]]:
        """Text and reasoning received before the stream was cut off."""
        return None, None

    def degraded_result(self, text: Optional[str] = None, reasoning: Optional[str] = None) -> UnifiedCompletionResult:
        logger.warning(f"{self.adapter.provider} stream ended without a final response")
        return UnifiedCompletionResult(
            text=text or STREAM_ENDED,
            mode=self.adapter.dialect,
            reasoning=reasoning or None,
        )

    @abstractmethod
    def handle_event(self, event: ServerSentEvent) -> None:
        """Advance the state machine by one event."""
        pass

    @abstractmethod
    def build_result(self) -> UnifiedCompletionResult:
        """Resolve the accumulated state into a unified result."""
        pass


class APIProviderAdapter(ABC):
    """Abstract base class for wire dialect adapters"""

    dialect: WireDialect
    provider: str = "unknown"

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: int = 2048,
        timeout: float = 180.0,
        **kwargs,
    ):
        self.model_name = model_name
        self.api_key = api_key
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout = timeout

    def prepare_request(self, request: CompletionRequest, stream: bool = False) -> PreparedRequest:
        """Build url, headers and body for one call."""
        return PreparedRequest(
            url=self.get_endpoint_url(),
            headers=self.get_headers(),
            body=self.format_request_payload(request, stream=stream),
        )

    def get_endpoint_url(self) -> str:
        return self.base_url

    @staticmethod
    def latest_user_text(conversation: List[Dict[str, Any]]) -> Optional[str]:
        """Most recent user entry whose content is plain text."""
        for entry in reversed(conversation):
            if entry.get("role") == "user" and isinstance(entry.get("content"), str):
                return entry["content"]
        return None

    async def arun(self, request: CompletionRequest, client: httpx.AsyncClient) -> UnifiedCompletionResult:
        """
        Execute one non-streaming call.

        Raises:
            ModelAPIError: Connection failure, timeout or non-2xx status
            ModelResponseError: A 2xx body that is not valid JSON
        """
        prepared = self.prepare_request(request)
        request_start_time = time.time()
        logger.debug(f"{self.provider} request to {prepared.url}: {json.dumps(prepared.body)[:2000]}")

        try:
            response = await client.post(
                prepared.url,
                headers=prepared.headers,
                json=prepared.body,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ModelAPIError.from_exception(self.provider, e, api_endpoint=prepared.url) from e

        if response.status_code >= 400:
            raise ModelAPIError.from_response(
                self.provider,
                response.status_code,
                body=self._safe_json(response),
                api_endpoint=prepared.url,
            )

        try:
            raw_response = response.json()
        except ValueError as e:
            raise ModelResponseError(
                f"Invalid JSON response from {self.provider}: {e}",
                response_content=response.text,
            ) from e

        logger.debug(
            f"{self.provider} response in {time.time() - request_start_time:.2f}s: "
            f"{json.dumps(raw_response)[:2000]}"
        )
        return self.harmonize_response(raw_response)

    async def arun_streaming(
        self,
        request: CompletionRequest,
        client: httpx.AsyncClient,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> UnifiedCompletionResult:
        """
        Execute one streaming call.

        Every chunk is passed to ``on_chunk`` as it is produced. The stream
        always terminates with exactly one ``done`` or ``error`` chunk.

        Raises:
            ModelAPIError: Transport failure or an error event in the stream
        """
        prepared = self.prepare_request(request, stream=True)
        state = self.create_stream_state()
        logger.debug(f"{self.provider} streaming request to {prepared.url}: {json.dumps(prepared.body)[:2000]}")

        try:
            async with client.stream(
                "POST",
                prepared.url,
                headers=prepared.headers,
                json=prepared.body,
                timeout=self.timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ModelAPIError.from_response(
                        self.provider,
                        response.status_code,
                        body=self._safe_json(response),
                        api_endpoint=prepared.url,
                    )

                async for event in aiter_sse(response.aiter_lines()):
                    state.feed(event)
                    await self._deliver(state.drain(), on_chunk)
                    if state.finished:
                        break

            result = state.finish()
            await self._deliver(state.drain(), on_chunk)
        except httpx.HTTPError as e:
            error = ModelAPIError.from_exception(self.provider, e, api_endpoint=prepared.url)
            await self._deliver([ErrorChunk(message=error.message)], on_chunk)
            raise error from e
        except ModelError as e:
            await self._deliver([ErrorChunk(message=e.message)], on_chunk)
            raise

        await self._deliver([DoneChunk()], on_chunk)
        return result

    @staticmethod
    async def _deliver(chunks: List[StreamChunk], on_chunk: Optional[ChunkCallback]) -> None:
        if on_chunk is None:
            return
        for chunk in chunks:
            outcome = on_chunk(chunk)
            if inspect.isawaitable(outcome):
                await outcome

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # Abstract methods that each dialect must implement
    @abstractmethod
    def get_headers(self) -> Dict[str, str]:
        """Return dialect-specific headers"""
        pass

    @abstractmethod
    def format_request_payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        """Convert a completion request into the dialect's request body"""
        pass

    @abstractmethod
    def harmonize_response(self, raw_response: Dict[str, Any]) -> UnifiedCompletionResult:
        """Convert a complete response body into a unified result"""
        pass

    @abstractmethod
    def create_stream_state(self) -> StreamState:
        """Return a fresh state machine for one streamed response"""
        pass
