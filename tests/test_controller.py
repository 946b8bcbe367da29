import asyncio

import httpx
import pytest

from llm_chat.llm.controller import (
    DEFAULT_SYSTEM_PROMPT,
    TIMEOUT_MESSAGE,
    StreamingRequestController,
    StreamOutcome,
)
from llm_chat.llm.errors import RequestInProgressError
from llm_chat.llm.types import ChatMessage, Language, Role, StreamDelta, StreamState

from .utils import DONE, Recorder, chat_chunk, sse_body

pytestmark = pytest.mark.asyncio


def sse_response(*contents):
    return lambda request: httpx.Response(
        200, content=sse_body(*contents), headers={"content-type": "text/event-stream"}
    )


async def run_request(recorder, config, **kwargs):
    async with recorder.client() as client:
        controller = StreamingRequestController(client, **kwargs)
        deltas = [d async for d in controller.stream(config)]
        await controller.join()
    return controller, deltas


async def test_request_body_for_first_message(make_config):
    recorder = Recorder(sse_response("Hi"))
    await run_request(recorder, make_config(message="Hello", history=[]))

    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["Content-Type"] == "application/json"
    body = recorder.bodies[0]
    assert body["messages"] == [
        {"role": "system", "content": "You are a test assistant."},
        {"role": "user", "content": "Hello"},
    ]
    assert body["model"] == "gpt-3.5-turbo"
    assert body["temperature"] == 1.0
    assert body["stream"] is True


async def test_no_authorization_header_without_token(make_config):
    recorder = Recorder(sse_response("Hi"))
    await run_request(recorder, make_config(api_token=None))
    assert "Authorization" not in recorder.requests[0].headers


async def test_organization_header(make_config):
    recorder = Recorder(sse_response("Hi"))
    await run_request(recorder, make_config(organization_id="org-42"))
    assert recorder.requests[0].headers["OpenAI-Organization"] == "org-42"


async def test_deltas_arrive_in_order(make_config):
    controller, deltas = await run_request(Recorder(sse_response("Hi", " there")), make_config())
    assert [(d.text, d.is_final) for d in deltas] == [("Hi", False), (" there", False), ("", True)]
    assert controller.state is StreamState.COMPLETED
    assert controller.outcome == StreamOutcome(StreamState.COMPLETED, "Hi there")
    assert controller.buffer == ""


async def test_body_without_done_still_completes(make_config):
    recorder = Recorder(lambda request: httpx.Response(200, content=b"Hello world"))
    controller, deltas = await run_request(recorder, make_config())
    assert [(d.text, d.is_final) for d in deltas] == [("Hello world", False), ("", True)]
    assert controller.state is StreamState.COMPLETED


async def test_legacy_completions_endpoint(make_config):
    recorder = Recorder(
        lambda request: httpx.Response(200, content=b'data: {"choices":[{"text":"Once"}]}\n\n' + DONE)
    )
    config = make_config(
        endpoint_url="http://localhost:8080/v1",
        use_chat_endpoint=False,
        message="Tell a story",
        api_token=None,
    )
    _, deltas = await run_request(recorder, config)

    assert str(recorder.requests[0].url) == "http://localhost:8080/v1/completions"
    body = recorder.bodies[0]
    assert "messages" not in body
    assert body["prompt"] == "You are a test assistant.\n\nTell a story"
    assert [d.text for d in deltas] == ["Once", ""]


async def test_language_instruction_in_system_prompt(make_config):
    recorder = Recorder(sse_response("Bonjour"))
    await run_request(recorder, make_config(preferred_language=Language.FRENCH))
    system = recorder.bodies[0]["messages"][0]["content"]
    assert system.startswith("You are a test assistant.\n\nIMPORTANT: You must respond only in French")
    assert system.endswith("Veuillez répondre en français.")


async def test_default_system_prompt(make_config):
    recorder = Recorder(sse_response("Hi"))
    await run_request(recorder, make_config(system_prompt="  ", preferred_language="English"))
    assert recorder.bodies[0]["messages"][0]["content"] == DEFAULT_SYSTEM_PROMPT


@pytest.mark.parametrize(
    "template, expected",
    [
        ("Translate to German: {message}", "Translate to German: Hello"),
        ("Answer briefly. {input}", "Answer briefly. Hello"),
        ("Be concise.", "Be concise.\n\nHello"),
    ],
)
async def test_user_prompt_template(make_config, template, expected):
    recorder = Recorder(sse_response("ok"))
    await run_request(recorder, make_config(user_prompt_template=template))
    assert recorder.bodies[0]["messages"][-1] == {"role": "user", "content": expected}


async def test_history_with_image(make_config):
    history = [
        ChatMessage.image_message(Role.USER, b"\x89PNG", "image/png"),
        ChatMessage.text_message(Role.ASSISTANT, "A cat on a sofa"),
    ]
    recorder = Recorder(sse_response("ok"))
    await run_request(recorder, make_config(history=history, message="What colour is it?"))

    messages = recorder.bodies[0]["messages"]
    assert len(messages) == 4
    image_part = messages[1]["content"][1]
    assert image_part == {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw=="}}
    assert messages[2] == {"role": "assistant", "content": "A cat on a sofa"}
    assert messages[3] == {"role": "user", "content": "What colour is it?"}


async def test_temperature_is_clamped(make_config):
    recorder = Recorder(sse_response("ok"))
    await run_request(recorder, make_config(temperature=3.5))
    assert recorder.bodies[0]["temperature"] == 2.0


async def test_long_history_is_compressed(make_config):
    history = [
        ChatMessage.text_message(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"turn {i} " + "x" * 2000)
        for i in range(12)
    ]
    recorder = Recorder(sse_response("ok"))
    await run_request(recorder, make_config(history=history))

    messages = recorder.bodies[0]["messages"]
    assert len(messages) == 1 + 9 + 1
    assert messages[4]["role"] == "assistant"
    assert messages[4]["content"].startswith("[Summary of previous conversation: turn 4 ")


async def test_upstream_error_status(make_config):
    recorder = Recorder(
        lambda request: httpx.Response(401, json={"error": {"message": "Invalid API key", "type": "auth"}})
    )
    controller, deltas = await run_request(recorder, make_config())
    assert deltas == [StreamDelta(text="Error: Invalid API key", is_final=True, is_error=True)]
    assert controller.state is StreamState.FAILED
    assert controller.outcome.error == "Invalid API key"


@pytest.mark.parametrize(
    "response, message",
    [
        (httpx.Response(503, text="Service Unavailable"), "Error: Service Unavailable"),
        (httpx.Response(502), "Error: Server returned HTTP 502"),
    ],
)
async def test_upstream_error_without_json(make_config, response, message):
    _, deltas = await run_request(Recorder(lambda request: response), make_config())
    assert [(d.text, d.is_final, d.is_error) for d in deltas] == [(message, True, True)]


async def test_network_error(make_config):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    controller, deltas = await run_request(Recorder(refuse), make_config())
    assert deltas == [StreamDelta(text="Error: Network error: connection refused", is_final=True, is_error=True)]
    assert controller.state is StreamState.FAILED


async def test_transport_timeout(make_config):
    def time_out(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    _, deltas = await run_request(Recorder(time_out), make_config())
    assert deltas == [StreamDelta(text=f"Error: {TIMEOUT_MESSAGE}", is_final=True, is_error=True)]


async def test_invalid_endpoint_fails_without_request(make_config):
    recorder = Recorder(sse_response("never"))
    controller, deltas = await run_request(recorder, make_config(endpoint_url="ftp://llm.test"))
    assert len(deltas) == 1
    assert deltas[0].is_error and deltas[0].is_final
    assert deltas[0].text.startswith("Error: Invalid API endpoint")
    assert controller.state is StreamState.FAILED
    assert recorder.requests == []


async def test_error_frame_mid_stream(make_config):
    body = chat_chunk("Hi") + b'data: {"error":{"message":"model overloaded"}}\n\n'
    recorder = Recorder(lambda request: httpx.Response(200, content=body))
    controller, deltas = await run_request(recorder, make_config())
    assert deltas == [
        StreamDelta(text="Hi"),
        StreamDelta(text="Error: model overloaded", is_final=True, is_error=True),
    ]
    assert controller.outcome == StreamOutcome(StreamState.FAILED, "Hi", "model overloaded")


async def test_cancel_after_two_deltas(make_config):
    async def body():
        yield chat_chunk("Hi")
        yield chat_chunk(" there")
        await asyncio.sleep(10)
        yield chat_chunk("never")
        yield DONE

    recorder = Recorder(lambda request: httpx.Response(200, content=body()))
    received, partial = [], None
    async with recorder.client() as client:
        controller = StreamingRequestController(client)
        async for delta in controller.stream(make_config()):
            received.append(delta)
            if len(received) == 2:
                assert controller.state is StreamState.STREAMING
                partial = controller.cancel()
        await controller.join()

    assert [d.text for d in received] == ["Hi", " there"]
    assert partial == "Hi there"
    assert controller.state is StreamState.CANCELLED
    assert controller.outcome.text == "".join(d.text for d in received)
    assert controller.cancel() == ""


async def test_cancel_before_response(make_config):
    async def slow(request):
        await asyncio.sleep(10)
        return httpx.Response(200, content=sse_body("late"))

    async with Recorder(slow).client() as client:
        controller = StreamingRequestController(client)
        deltas = controller.stream(make_config())
        await asyncio.sleep(0.01)
        assert controller.state is StreamState.SENDING
        assert controller.cancel() == ""
        assert [d async for d in deltas] == []
        await controller.join()
    assert controller.outcome == StreamOutcome(StreamState.CANCELLED, "")


async def test_watchdog_fires_exactly_once(make_config):
    async def slow(request):
        await asyncio.sleep(0.5)
        return httpx.Response(200, content=sse_body("late"))

    calls = []
    async with Recorder(slow).client() as client:
        controller = StreamingRequestController(client, watchdog_timeout=0.05)
        handle = controller.start(make_config(), lambda text, is_final: calls.append((text, is_final)))
        outcome = await handle.wait()
        await asyncio.sleep(0.6)

    assert calls == [(f"Error: {TIMEOUT_MESSAGE}", True)]
    assert outcome.state is StreamState.FAILED
    assert outcome.error == TIMEOUT_MESSAGE
    assert handle.state is StreamState.FAILED


async def test_watchdog_error_delta(make_config):
    async def slow(request):
        await asyncio.sleep(0.5)
        return httpx.Response(200, content=sse_body("late"))

    controller, deltas = await run_request(Recorder(slow), make_config(), watchdog_timeout=0.05)
    assert deltas == [StreamDelta(text=f"Error: {TIMEOUT_MESSAGE}", is_final=True, is_error=True)]


async def test_watchdog_disarmed_by_first_delta(make_config):
    async def body():
        yield chat_chunk("Hi")
        await asyncio.sleep(0.2)
        yield chat_chunk("!")
        yield DONE

    recorder = Recorder(lambda request: httpx.Response(200, content=body()))
    controller, deltas = await run_request(recorder, make_config(), watchdog_timeout=0.05)
    assert [d.text for d in deltas] == ["Hi", "!", ""]
    assert controller.state is StreamState.COMPLETED


async def test_start_with_async_callback(make_config):
    received = []

    async def on_delta(text, is_final):
        received.append((text, is_final))

    async with Recorder(sse_response("a", "b")).client() as client:
        controller = StreamingRequestController(client)
        outcome = await controller.start(make_config(), on_delta).wait()

    assert received == [("a", False), ("b", False), ("", True)]
    assert outcome == StreamOutcome(StreamState.COMPLETED, "ab")


async def test_second_request_while_active_is_rejected(make_config):
    async def slow(request):
        await asyncio.sleep(10)
        return httpx.Response(200, content=sse_body("late"))

    async with Recorder(slow).client() as client:
        controller = StreamingRequestController(client)
        first = controller.stream(make_config())
        with pytest.raises(RequestInProgressError):
            controller.stream(make_config())
        controller.cancel()
        assert [d async for d in first] == []
        await controller.join()


async def test_controller_is_reusable_after_completion(make_config):
    recorder = Recorder(sse_response("again"))
    async with recorder.client() as client:
        controller = StreamingRequestController(client)
        for _ in range(2):
            deltas = [d async for d in controller.stream(make_config())]
            await controller.join()
            assert [d.text for d in deltas] == ["again", ""]
    assert len(recorder.requests) == 2


async def test_deeply_nested_frame_does_not_stall_stream(make_config):
    body = chat_chunk("Hi") + b"data: " + b"[" * 200000 + b"\n\n" + DONE
    recorder = Recorder(lambda request: httpx.Response(200, content=body))
    controller, deltas = await asyncio.wait_for(
        run_request(recorder, make_config(), watchdog_timeout=0.2), timeout=2
    )
    assert deltas[0] == StreamDelta(text="Hi")
    assert deltas[-1] == StreamDelta(text="", is_final=True)
    assert controller.state is StreamState.COMPLETED


async def test_unexpected_transport_error_ends_stream(make_config):
    def explode(request):
        raise RuntimeError("boom")

    controller, deltas = await asyncio.wait_for(run_request(Recorder(explode), make_config()), timeout=2)
    assert deltas == [StreamDelta(text="Error: Unexpected error: boom", is_final=True, is_error=True)]
    assert controller.state is StreamState.FAILED
    assert controller.outcome.error == "Unexpected error: boom"


async def test_unexpected_error_while_building_request_ends_stream(make_config):
    class BrokenContext:
        async def prepare(self, history, system_prompt, model, config=None):
            raise KeyError("history")

    recorder = Recorder(sse_response("never"))
    controller, deltas = await asyncio.wait_for(
        run_request(recorder, make_config(), context_manager=BrokenContext()), timeout=2
    )
    assert len(deltas) == 1
    assert deltas[0].is_final and deltas[0].is_error
    assert deltas[0].text.startswith("Error: Unexpected error")
    assert recorder.requests == []
