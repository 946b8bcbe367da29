"""Streaming chat requests against OpenAI-compatible endpoints."""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

from .context import ContextWindowManager
from .decoder import StreamDecoder
from .endpoints import build_headers, normalize_endpoint
from .errors import ConfigurationError, RequestInProgressError, UpstreamError
from .types import ChatMessage, ImageContent, RequestConfig, Role, StreamDelta, StreamState, TextContent

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_WATCHDOG_SECONDS = 30.0
DEFAULT_REQUEST_TIMEOUT = 60.0
TIMEOUT_MESSAGE = "Connection failed or timed out. Please try again."

DeltaCallback = Callable[[str, bool], Union[None, Awaitable[None]]]


def system_prompt_for(config: RequestConfig) -> str:
    """Base system prompt, plus a strict language instruction when needed."""
    prompt = config.system_prompt.strip() or DEFAULT_SYSTEM_PROMPT
    language = config.preferred_language
    if language.is_default:
        return prompt
    return (
        f"{prompt}\n\nIMPORTANT: You must respond only in {language.value}, "
        f"regardless of the language of the question. {language.prompt_instruction}"
    )


def render_user_message(template: str, message: str) -> str:
    if not template.strip():
        return message
    for placeholder in ("{message}", "{input}"):
        if placeholder in template:
            return template.replace(placeholder, message)
    return f"{template.strip()}\n\n{message}"


def message_to_wire(message: ChatMessage) -> dict:
    if isinstance(message.content, TextContent):
        return {"role": message.role.value, "content": message.content.text}
    if isinstance(message.content, ImageContent):
        if message.role is Role.USER:
            return {
                "role": message.role.value,
                "content": [
                    {"type": "text", "text": ""},
                    {"type": "image_url", "image_url": {"url": message.content.data_url}},
                ],
            }
        return {"role": message.role.value, "content": "[Image]"}
    raise TypeError(f"unknown message content: {message.content!r}")


def _upstream_message(status_code: int, body: bytes) -> str:
    text = body.decode("utf-8", "replace").strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return text or f"Server returned HTTP {status_code}"


@dataclass
class StreamOutcome:
    """How a request ended and the text accumulated before it did."""
    state: StreamState
    text: str
    error: Optional[str] = None


class _StreamRun:
    """Per-request state: queue, buffer, watchdog and the network task."""

    def __init__(self):
        self.state = StreamState.SENDING
        self.queue: asyncio.Queue[Optional[StreamDelta]] = asyncio.Queue()
        self.buffer: list[str] = []
        self.received = False
        self.task: Optional[asyncio.Task] = None
        self.watchdog: Optional[asyncio.TimerHandle] = None
        self.outcome: Optional[StreamOutcome] = None

    def disarm_watchdog(self):
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None


class StreamHandle:
    """Returned by `StreamingRequestController.start`."""

    def __init__(self, controller: "StreamingRequestController", run: _StreamRun, task: asyncio.Task):
        self._controller = controller
        self._run = run
        self._task = task

    @property
    def state(self) -> StreamState:
        return self._run.state

    def cancel(self) -> str:
        if self._controller._run is not self._run:
            return ""
        return self._controller.cancel()

    async def wait(self) -> Optional[StreamOutcome]:
        """Wait until every delta has been handed to the callback."""
        await self._task
        if self._run.task is not None:
            await asyncio.gather(self._run.task, return_exceptions=True)
        return self._run.outcome


class StreamingRequestController:
    """Runs one streaming chat request at a time.

    Starting a request while another one is active raises
    `RequestInProgressError`; call `cancel()` first.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        context_manager: ContextWindowManager | None = None,
        watchdog_timeout: Optional[float] = DEFAULT_WATCHDOG_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self._client = client
        self._owns_client = client is None
        self.context_manager = context_manager or ContextWindowManager()
        self.watchdog_timeout = watchdog_timeout
        self.request_timeout = request_timeout
        self._run: Optional[_StreamRun] = None
        self.outcome: Optional[StreamOutcome] = None

    @property
    def state(self) -> StreamState:
        return self._run.state if self._run else StreamState.IDLE

    @property
    def buffer(self) -> str:
        """Text received so far by the active request."""
        return "".join(self._run.buffer) if self._run else ""

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def build_messages(self, config: RequestConfig) -> list[dict]:
        system_prompt = system_prompt_for(config)
        prepared = await self.context_manager.prepare(config.history, system_prompt, config.model, config)
        messages = [{"role": Role.SYSTEM.value, "content": system_prompt}]
        messages.extend(message_to_wire(m) for m in prepared.messages)
        messages.append(
            {"role": Role.USER.value, "content": render_user_message(config.user_prompt_template, config.message)}
        )
        return messages

    async def build_payload(self, config: RequestConfig) -> dict:
        payload = {"model": config.model}
        if config.use_chat_endpoint:
            payload["messages"] = await self.build_messages(config)
        else:
            parts = [system_prompt_for(config), render_user_message(config.user_prompt_template, config.message)]
            payload["prompt"] = "\n\n".join(p for p in parts if p)
        payload["temperature"] = config.temperature
        payload["stream"] = True
        return payload

    def stream(self, config: RequestConfig) -> AsyncIterator[StreamDelta]:
        """Start a request and return its deltas in arrival order.

        The sequence ends after the final delta, or silently after `cancel()`.

        Raises:
            RequestInProgressError: If a request is already active.
        """
        if self.state.is_active:
            raise RequestInProgressError("A request is already in progress; cancel it first")
        run = _StreamRun()
        self._run = run
        self.outcome = None
        run.task = asyncio.create_task(self._execute(run, config))
        return self._consume(run)

    def start(self, config: RequestConfig, on_delta: DeltaCallback) -> StreamHandle:
        """Callback flavour of `stream`: `on_delta(text, is_final)` per delta."""
        deltas = self.stream(config)
        run = self._run

        async def pump():
            async for delta in deltas:
                result = on_delta(delta.text, delta.is_final)
                if inspect.isawaitable(result):
                    await result

        return StreamHandle(self, run, asyncio.create_task(pump()))

    def cancel(self) -> str:
        """Abort the active request and return the text received so far."""
        run = self._run
        if run is None or run.state.is_terminal:
            return ""
        self._finish(run, StreamState.CANCELLED)
        logger.info("Request cancelled after %d chars", len(run.outcome.text))
        return run.outcome.text

    async def _consume(self, run: _StreamRun) -> AsyncIterator[StreamDelta]:
        try:
            while True:
                delta = await run.queue.get()
                if delta is None or run.state is StreamState.CANCELLED:
                    break
                yield delta
                if delta.is_final:
                    break
        finally:
            if not run.state.is_terminal:
                self._finish(run, StreamState.CANCELLED)

    async def _execute(self, run: _StreamRun, config: RequestConfig):
        try:
            try:
                url = normalize_endpoint(config.endpoint_url, config.use_chat_endpoint)
                payload = await self.build_payload(config)
            except ConfigurationError as e:
                self._fail(run, e.message)
                return
            if run.state.is_terminal:
                return

            headers = build_headers(config.api_token, config.organization_id)
            client = await self._get_client()
            self._arm_watchdog(run)
            logger.info("Connecting to endpoint: %s (model %s)", url, config.model)
            async with client.stream(
                "POST", url, json=payload, headers=headers, timeout=self.request_timeout
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise UpstreamError(_upstream_message(response.status_code, body), response.status_code)
                if not run.state.is_terminal:
                    run.state = StreamState.STREAMING

                decoder = StreamDecoder()
                async for chunk in response.aiter_bytes():
                    for delta in decoder.feed(chunk):
                        self._deliver(run, delta)
                    if run.state.is_terminal:
                        return
                for delta in decoder.finish():
                    self._deliver(run, delta)

            if not run.state.is_terminal:
                if decoder.finish_reason:
                    logger.debug("Stream ended with finish_reason=%s", decoder.finish_reason)
                self._finish(run, StreamState.COMPLETED, StreamDelta(text="", is_final=True))
        except UpstreamError as e:
            logger.warning("Upstream error status=%s: %s", e.status_code, e.message)
            self._fail(run, e.message)
        except httpx.TimeoutException:
            logger.warning("Request timed out")
            self._fail(run, TIMEOUT_MESSAGE)
        except httpx.RequestError as e:
            logger.warning("Request failed: %s", e)
            self._fail(run, f"Network error: {e}")
        except Exception as e:
            logger.exception("Unexpected error while streaming")
            self._fail(run, f"Unexpected error: {e}")
        finally:
            run.disarm_watchdog()

    def _arm_watchdog(self, run: _StreamRun):
        if not self.watchdog_timeout:
            return
        loop = asyncio.get_running_loop()
        run.watchdog = loop.call_later(self.watchdog_timeout, self._on_watchdog, run)

    def _on_watchdog(self, run: _StreamRun):
        run.watchdog = None
        if run.received or run.state.is_terminal:
            return
        logger.warning("No response within %.1fs", self.watchdog_timeout)
        self._fail(run, TIMEOUT_MESSAGE)

    def _deliver(self, run: _StreamRun, delta: StreamDelta):
        if run.state.is_terminal:
            logger.debug("Dropping delta received after %s", run.state.value)
            return
        run.received = True
        run.disarm_watchdog()
        if delta.is_final:
            state = StreamState.FAILED if delta.is_error else StreamState.COMPLETED
            error = delta.text.removeprefix("Error: ") if delta.is_error else None
            self._finish(run, state, delta, error=error)
            return
        run.buffer.append(delta.text)
        run.queue.put_nowait(delta)

    def _fail(self, run: _StreamRun, message: str):
        text = f"Error: {message}"
        self._finish(run, StreamState.FAILED, StreamDelta(text=text, is_final=True, is_error=True), error=message)

    def _finish(
        self,
        run: _StreamRun,
        state: StreamState,
        final_delta: Optional[StreamDelta] = None,
        error: Optional[str] = None,
    ):
        if run.state.is_terminal:
            return
        run.state = state
        run.disarm_watchdog()
        run.outcome = StreamOutcome(state=state, text="".join(run.buffer), error=error)
        run.buffer.clear()
        if run is self._run:
            self.outcome = run.outcome
        if final_delta is not None:
            run.queue.put_nowait(final_delta)
        run.queue.put_nowait(None)
        if run.task is not None and run.task is not asyncio.current_task():
            run.task.cancel()

    async def join(self):
        """Wait until the latest request's network task has unwound."""
        run = self._run
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)

    async def aclose(self):
        self.cancel()
        await self.join()
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
