"""
Model Gateway: OpenRouter chat completions over HTTP.

The API key lives in the app settings table under a fixed logical key. A
missing or blank key is a configuration error raised before any request.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from forkline.config_loader import CONFIG
from forkline.database import db_get_setting, db_set_setting, db_delete_setting
from forkline.errors import EmptyCompletion, GatewayError, MissingCredential

logger = logging.getLogger(__name__)

OPENROUTER_API_KEY_SETTING = CONFIG["openrouter"]["api_key_setting"]

_cached_client = None
_cached_key = None


def get_api_key() -> Optional[str]:
    """Configured key, or None when unset or blank."""
    value = db_get_setting(OPENROUTER_API_KEY_SETTING)
    value = (value or "").strip()
    return value or None


def set_api_key(api_key: str) -> None:
    db_set_setting(OPENROUTER_API_KEY_SETTING, (api_key or "").strip())
    invalidate_openrouter_client()


def clear_api_key() -> bool:
    removed = db_delete_setting(OPENROUTER_API_KEY_SETTING)
    invalidate_openrouter_client()
    return removed


def normalize_assistant_content(content: Any) -> str:
    """Flatten a completion's ``content`` into text.

    Strings pass through. Lists concatenate string items and string ``text``
    fields of dict parts; every other part shape contributes nothing.
    """
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for item in content:
            if isinstance(item, str):
                pieces.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                pieces.append(item["text"])
        return "".join(pieces)
    return ""


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", body["error"]))
    return str(body)[:200]


class OpenRouterClient:
    """Thin async client for the OpenRouter chat completions endpoint."""

    def __init__(self, api_key: str, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.base_url = (base_url or CONFIG["openrouter"]["base_url"]).rstrip("/")
        self.timeout = timeout if timeout is not None else CONFIG["openrouter"]["timeout"]
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": CONFIG["openrouter"]["referer"],
            "X-Title": CONFIG["openrouter"]["app_title"],
        }

    async def send_chat(self, model: str, messages: List[Dict[str, str]],
                        temperature: Optional[float] = None, top_p: Optional[float] = None,
                        frequency_penalty: Optional[float] = None, presence_penalty: Optional[float] = None,
                        max_tokens: Optional[int] = None) -> str:
        """Send one completion request and return the assistant text.

        Raises:
            GatewayError: transport failure, HTTP error status or provider error body
            EmptyCompletion: the provider answered without usable text
        """
        payload = {"model": model, "messages": messages}
        optional = {
            "temperature": temperature,
            "top_p": top_p,
            "frequency_penalty": frequency_penalty,
            "presence_penalty": presence_penalty,
            "max_tokens": max_tokens,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})

        logger.info(f"[GATEWAY] POST {self.base_url}/chat/completions model={model} messages={len(messages)}")
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                res = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
                res.raise_for_status()
                data = res.json()
            except httpx.HTTPStatusError as e:
                detail = _error_detail(e.response)
                logger.warning(f"[GATEWAY] HTTP {e.response.status_code}: {detail}")
                raise GatewayError(f"OpenRouter returned HTTP {e.response.status_code}: {detail}") from e
            except httpx.HTTPError as e:
                logger.warning(f"[GATEWAY] Request failed: {type(e).__name__}: {e}")
                raise GatewayError(f"API Error: {e}") from e
            except ValueError as e:
                raise GatewayError("Unexpected response from OpenRouter") from e

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GatewayError(f"OpenRouter error: {message}")

        content = None
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content")

        text = normalize_assistant_content(content).strip()
        if not text:
            raise EmptyCompletion()
        return text


def get_openrouter_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> OpenRouterClient:
    """Client for the configured key, reused while the key is unchanged."""
    global _cached_client, _cached_key

    api_key = get_api_key()
    if not api_key:
        raise MissingCredential()

    if transport is not None:
        return OpenRouterClient(api_key, transport=transport)

    if _cached_client is not None and _cached_key == api_key:
        return _cached_client

    _cached_client = OpenRouterClient(api_key)
    _cached_key = api_key
    return _cached_client


def invalidate_openrouter_client() -> None:
    global _cached_client, _cached_key
    _cached_client = None
    _cached_key = None
