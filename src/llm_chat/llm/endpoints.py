"""Endpoint URL handling and the models-listing call."""

import logging
from typing import Any, Optional

import httpx

from .errors import ConfigurationError, TransportError, UpstreamError

logger = logging.getLogger(__name__)

CHAT_PATH = "/v1/chat/completions"
COMPLETIONS_PATH = "/v1/completions"
MODELS_PATH = "/v1/models"


def _with_scheme(endpoint: str) -> str:
    url = (endpoint or "").strip()
    if not url:
        raise ConfigurationError("API endpoint is not configured")
    if "://" not in url:
        url = "https://" + url
    scheme = url.split("://", 1)[0].lower()
    if scheme not in ("http", "https"):
        raise ConfigurationError(f"Invalid API endpoint: {endpoint}")
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as e:
        raise ConfigurationError(f"Invalid API endpoint: {endpoint}") from e
    if not parsed.host:
        raise ConfigurationError(f"Invalid API endpoint: {endpoint}")
    return url


def normalize_endpoint(endpoint: str, use_chat_endpoint: bool = True) -> str:
    """Return the full completion URL for a configured endpoint.

    Accepts a bare host, a base URL (with or without a trailing `/v1`) or a URL
    that already carries a completion path. The expected path is never appended
    twice, and a path for the other endpoint flavour is replaced.

    Raises:
        ConfigurationError: If the endpoint is empty or not an http(s) URL.
    """
    url = _with_scheme(endpoint)
    expected = CHAT_PATH if use_chat_endpoint else COMPLETIONS_PATH
    if expected in url:
        return url

    url = url.rstrip("/")
    for suffix in (CHAT_PATH, COMPLETIONS_PATH, "/v1"):
        if url.endswith(suffix):
            url = url[: -len(suffix)]
            break
    return url + expected


def base_url(endpoint: str) -> str:
    """Strip everything from the first `/v1/` (or a trailing `/v1`) onwards."""
    url = _with_scheme(endpoint)
    if "/v1/" in url:
        url = url.split("/v1/", 1)[0]
    url = url.rstrip("/")
    if url.endswith("/v1"):
        url = url[: -len("/v1")]
    return url


def models_url(endpoint: str) -> str:
    return base_url(endpoint) + MODELS_PATH


def build_headers(api_token: Optional[str] = None, organization_id: Optional[str] = None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_token and api_token.strip():
        headers["Authorization"] = f"Bearer {api_token.strip()}"
    if organization_id:
        headers["OpenAI-Organization"] = organization_id
    return headers


def parse_models(payload: Any) -> list[str]:
    """Extract model names from `{data:[{id}]}`, `{models:[{name}]}` or `[str]`."""
    if isinstance(payload, dict):
        if isinstance(payload.get("data"), list):
            return [item["id"] for item in payload["data"] if isinstance(item, dict) and isinstance(item.get("id"), str)]
        if isinstance(payload.get("models"), list):
            return [
                item["name"] for item in payload["models"] if isinstance(item, dict) and isinstance(item.get("name"), str)
            ]
        return []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, str)]
    return []


async def list_models(
    client: httpx.AsyncClient,
    endpoint: str,
    api_token: Optional[str] = None,
    timeout: float = 30.0,
) -> list[str]:
    """Fetch the model names an endpoint advertises.

    Raises:
        ConfigurationError: If the endpoint URL is invalid.
        TransportError: If the endpoint cannot be reached.
        UpstreamError: On a non-2xx status or a body that is not JSON.
    """
    url = models_url(endpoint)
    logger.info("Fetching models from %s", url)
    headers = build_headers(api_token)
    headers.pop("Content-Type")
    try:
        response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise TransportError("Timed out fetching models") from e
    except httpx.RequestError as e:
        raise TransportError(f"Network error: {e}") from e

    if not response.is_success:
        raise UpstreamError(f"Model listing failed: {response.text or response.reason_phrase}", response.status_code)
    try:
        payload = response.json()
    except ValueError as e:
        raise UpstreamError("Model listing returned a non-JSON body", response.status_code) from e
    return parse_models(payload)
