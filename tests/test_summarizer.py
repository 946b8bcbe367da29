import httpx
import pytest

from llm_chat.llm.summarizer import ConversationSummarizer
from llm_chat.llm.types import ChatMessage, Role

from .utils import Recorder, title_response

pytestmark = pytest.mark.asyncio


def exchange(*texts):
    roles = [Role.USER, Role.ASSISTANT]
    return [ChatMessage.text_message(roles[i % 2], text) for i, text in enumerate(texts)]


async def test_summary_request(make_config):
    recorder = Recorder(lambda request: title_response('"Python Decorators Explained"'))
    messages = exchange("What are decorators?", "Functions wrapping functions.", "second question", "answer")
    async with recorder.client() as client:
        title = await ConversationSummarizer(client).summarize(messages, make_config())

    assert title == "Python Decorators Explained"
    request = recorder.requests[0]
    assert str(request.url) == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = recorder.bodies[0]
    assert body["model"] == "gpt-3.5-turbo"
    assert body["max_tokens"] == 20
    assert body["stream"] is False
    assert body["messages"][0]["role"] == "system"
    transcript = body["messages"][1]["content"]
    assert "User: What are decorators?" in transcript
    assert "Assistant: Functions wrapping functions." in transcript
    assert "second question" not in transcript


async def test_without_token_uses_first_message(make_config):
    recorder = Recorder(lambda request: title_response("unused"))
    async with recorder.client() as client:
        title = await ConversationSummarizer(client).summarize(
            exchange("Plan a trip to Lisbon", "Sure"), make_config(api_token=None)
        )
    assert title == "Plan a trip to Lisbon"
    assert recorder.requests == []


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="internal error"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
    ],
)
async def test_bad_responses_fall_back(make_config, response):
    recorder = Recorder(lambda request: response)
    long_question = "Explain the difference between threads and processes in detail"
    async with recorder.client() as client:
        title = await ConversationSummarizer(client).summarize(exchange(long_question, "ok"), make_config())
    assert title == long_question[:50] + "..."


async def test_network_error_falls_back(make_config):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with Recorder(refuse).client() as client:
        summarizer = ConversationSummarizer(client)
        assert await summarizer.try_summarize(exchange("hello", "hi"), make_config()) is None
        assert await summarizer.summarize(exchange("hello", "hi"), make_config()) == "hello"


async def test_try_summarize_empty_messages(make_config):
    recorder = Recorder(lambda request: title_response("unused"))
    async with recorder.client() as client:
        assert await ConversationSummarizer(client).try_summarize([], make_config()) is None
    assert recorder.requests == []

