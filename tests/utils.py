import json

import httpx

DONE = b"data: [DONE]\n\n"


def chat_chunk(content=None, finish_reason=None) -> bytes:
    delta = {} if content is None else {"content": content}
    frame = {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(frame)}\n\n".encode("utf-8")


def sse_body(*contents: str) -> bytes:
    return b"".join(chat_chunk(c) for c in contents) + DONE


def title_response(title: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": title}}]})


class Recorder:
    """MockTransport handler that records requests and replays a response factory."""

    def __init__(self, respond):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request):
        self.requests.append(request)
        result = self.respond(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.content]

    @property
    def stream_bodies(self) -> list[dict]:
        return [b for b in self.bodies if b.get("stream")]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def parse_sse(text: str) -> list[dict]:
    frames = []
    for line in text.splitlines():
        if line.startswith("data: "):
            frames.append(json.loads(line[len("data: "):]))
    return frames


def fake_upstream(*contents: str, title: str = "Test Conversation", models=("gpt-3.5-turbo", "gpt-4")):
    """Answer model listings, streamed chat requests and title requests."""

    def respond(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"object": "list", "data": [{"id": m} for m in models]})
        if is_stream_request(request):
            return httpx.Response(200, content=sse_body(*contents), headers={"content-type": "text/event-stream"})
        return title_response(title)

    return respond


def is_stream_request(request: httpx.Request) -> bool:
    return bool(request.content) and bool(json.loads(request.content).get("stream"))
