"""Model listing and token estimation endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..llm.errors import ChatStreamError, UpstreamError
from ..llm.tokens import context_budget, estimate_tokens
from ..service import ChatService, get_chat_service

router = APIRouter(tags=["models"])


@router.get("/models")
async def list_models_endpoint(service: ChatService = Depends(get_chat_service)):
    """List the models the configured endpoint advertises."""
    try:
        available = await service.list_models()
    except ChatStreamError as e:
        status_code = e.status_code if isinstance(e, UpstreamError) and e.status_code else 502
        return JSONResponse(status_code=status_code, content={"error": e.message})
    return {"endpoint": service.settings.endpoint_url, "models": available}


@router.get("/models/{model_name}/tokens")
async def estimate_tokens_endpoint(model_name: str, text: str = ""):
    """Estimate the token cost of `text` against a model's context budget."""
    budget = context_budget(model_name)
    return {
        "model": model_name,
        "tokens": estimate_tokens(text),
        "max_tokens": budget.max_tokens,
        "usable_tokens": budget.usable,
    }
