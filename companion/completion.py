"""
Completion Client

Resolves a model/provider pair from the registry and performs the chat
completion HTTP call with bounded retries:

- up to `completion.max_attempts` POSTs
- HTTP 429 waits 2**attempt * backoff_base_ms before the next attempt
- other non-2xx statuses are retried immediately
- empty content and transport errors give up after `completion.max_empty_attempts`

`complete()` returns an Outcome; `generate_completion()` keeps the plain
"text or None" contract and never raises.
"""

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from companion.config_loader import CONFIG
from companion.outcome import ErrorKind, Outcome
from companion.providers import ProviderRegistry

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

Sleep = Callable[[float], Awaitable[Any]]


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if isinstance(data, dict) and isinstance(data.get("error"), dict) and data["error"].get("message"):
        return data["error"]["message"]
    return f"HTTP {response.status_code}"


class CompletionClient:
    def __init__(self, registry: ProviderRegistry, config: Optional[Dict[str, Any]] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 sleep: Sleep = asyncio.sleep,
                 env: Optional[Mapping[str, str]] = None):
        cfg = (config or CONFIG).get("completion", {})
        self.registry = registry
        self.http_client = http_client
        self.sleep = sleep
        self.env = os.environ if env is None else env
        self.max_attempts = int(cfg.get("max_attempts", 5))
        self.backoff_base_ms = int(cfg.get("backoff_base_ms", 1000))
        self.max_empty_attempts = int(cfg.get("max_empty_attempts", 2))
        self.timeout = float(cfg.get("timeout", 60.0))
        self.temperature = float(cfg.get("temperature", 1.0))
        self.default_max_tokens = int(cfg.get("default_max_tokens", 600))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_model(self, model: Optional[str], user_model_preference: Optional[str],
                      is_premium: bool) -> Outcome[Dict[str, Any]]:
        model_key = model or user_model_preference
        if not model_key:
            auto = self.registry.first_model_for_tier(is_premium)
            if not auto:
                logger.error("[COMPLETION] No suitable models found for user subscription level")
                return Outcome.failure(ErrorKind.NO_MODEL, "no model for tier")
            logger.info(f"[COMPLETION] Auto-selected model: {auto.get('displayName')}")
            return Outcome.success(auto)

        found = self.registry.get_model_by_key(model_key)
        if found:
            return Outcome.success(found)

        logger.info(f"[COMPLETION] Model '{model_key}' not found, falling back")
        fallback = (self.registry.first_model_for_tier(is_premium, provider="openai")
                    or self.registry.first_model_for_tier(is_premium))
        if not fallback:
            logger.error(f"[COMPLETION] Model '{model_key}' not found and no fallback available")
            return Outcome.failure(ErrorKind.NO_MODEL, f"model {model_key} not found")
        logger.info(f"[COMPLETION] Using fallback model: {fallback.get('displayName')}")
        return Outcome.success(fallback)

    def _headers(self, provider: Dict[str, Any], api_key: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if provider.get("name") == "segmind":
            headers["x-api-key"] = api_key
        else:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(self, messages: List[Dict[str, Any]], max_tokens: Optional[int] = None,
                       model: Optional[str] = None, lang: str = "en",
                       user_model_preference: Optional[str] = None, is_premium: bool = False,
                       response_format: Optional[Dict[str, Any]] = None,
                       temperature: Optional[float] = None) -> Outcome[str]:
        resolved = self.resolve_model(model, user_model_preference, is_premium)
        if not resolved.ok:
            return Outcome.failure(resolved.error, resolved.detail)
        db_model = resolved.value

        provider = self.registry.get_provider_by_name(db_model.get("provider"))
        if not provider:
            logger.error(f"[COMPLETION] Provider '{db_model.get('provider')}' not found")
            return Outcome.failure(ErrorKind.NOT_FOUND, f"provider {db_model.get('provider')}")

        api_key = self.env.get(provider.get("envKeyName") or "")
        if not api_key:
            logger.error(f"[COMPLETION] API key not configured for provider: "
                         f"{provider.get('name')} ({provider.get('envKeyName')})")
            return Outcome.failure(ErrorKind.MISSING_API_KEY, provider.get("envKeyName") or "")

        max_tokens = max_tokens or self.default_max_tokens
        payload: Dict[str, Any] = {
            "model": db_model.get("modelId"),
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_completion_tokens": min(max_tokens, db_model.get("maxTokens") or max_tokens),
            "stream": False,
            "n": 1,
        }
        if response_format:
            payload["response_format"] = response_format

        url = db_model.get("apiUrl") or provider.get("baseUrl")
        headers = self._headers(provider, api_key)
        logger.info(f"[COMPLETION] Using model: {db_model.get('displayName')} from provider: {provider.get('name')} (lang={lang})")

        empty_failures = 0
        last_error = Outcome.failure(ErrorKind.PROVIDER_ERROR, "no attempts made")

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._post(url, payload, headers)
            except httpx.TimeoutException as e:
                empty_failures += 1
                last_error = Outcome.failure(ErrorKind.TIMEOUT, str(e) or "timeout")
                logger.warning(f"[COMPLETION] Attempt {attempt} timed out")
                if empty_failures >= self.max_empty_attempts:
                    return last_error
                continue
            except httpx.HTTPError as e:
                empty_failures += 1
                last_error = Outcome.failure(ErrorKind.PROVIDER_ERROR, str(e))
                logger.warning(f"[COMPLETION] Attempt {attempt} failed: {e}")
                if empty_failures >= self.max_empty_attempts:
                    logger.error(f"[COMPLETION] Request failed after {attempt} attempts: {e}")
                    return last_error
                continue

            if not response.is_success:
                message = _error_message(response)
                kind = ErrorKind.RATE_LIMITED if response.status_code == 429 else ErrorKind.PROVIDER_ERROR
                last_error = Outcome.failure(kind, message)
                if attempt == self.max_attempts:
                    logger.error(f"[COMPLETION] API call failed after {attempt} attempts: {message}")
                    return last_error
                logger.info(f"[COMPLETION] Attempt {attempt} failed: {message}, retrying...")
                if response.status_code == 429:
                    delay_ms = (2 ** attempt) * self.backoff_base_ms
                    logger.info(f"[COMPLETION] Rate limited, waiting {delay_ms}ms before retry")
                    await self.sleep(delay_ms / 1000.0)
                continue

            try:
                data = response.json()
                content = data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                empty_failures += 1
                last_error = Outcome.failure(ErrorKind.INVALID_RESPONSE, f"malformed response body: {e!r}")
                logger.error(f"[COMPLETION] Malformed API response on attempt {attempt}")
                if empty_failures >= self.max_empty_attempts:
                    return last_error
                continue

            if not content or not str(content).strip():
                empty_failures += 1
                last_error = Outcome.failure(ErrorKind.EMPTY_RESPONSE, "no content in response")
                logger.error("[COMPLETION] No content in API response")
                if empty_failures >= self.max_empty_attempts:
                    return last_error
                continue

            return Outcome.success(str(content).strip())

        logger.error("[COMPLETION] All retry attempts exhausted")
        return last_error

    async def generate_completion(self, messages: List[Dict[str, Any]], max_tokens: Optional[int] = None,
                                  model: Optional[str] = None, lang: str = "en",
                                  user_model_preference: Optional[str] = None,
                                  is_premium: bool = False) -> Optional[str]:
        """Text of the first choice, or None on any failure."""
        try:
            outcome = await self.complete(messages, max_tokens, model, lang, user_model_preference, is_premium)
        except Exception as e:
            logger.error(f"[COMPLETION] Unexpected error: {e}")
            return None
        return outcome.unwrap_or(None)

    async def complete_json(self, messages: List[Dict[str, Any]], schema: Type[M],
                            model: Optional[str] = None, max_tokens: Optional[int] = None,
                            is_premium: bool = True, temperature: Optional[float] = None,
                            name: Optional[str] = None) -> Optional[M]:
        """
        Ask for a JSON object matching `schema` and validate it.

        Returns:
            Parsed pydantic model, or None if the call or validation failed
        """
        response_format = {
            "type": "json_schema",
            "json_schema": {
                "name": name or schema.__name__.lower(),
                "schema": schema.model_json_schema(),
            },
        }
        try:
            outcome = await self.complete(messages, max_tokens, model, "en", None, is_premium,
                                          response_format=response_format, temperature=temperature)
        except Exception as e:
            logger.error(f"[COMPLETION] Unexpected error in structured call: {e}")
            return None
        if not outcome.ok:
            return None
        try:
            return schema.model_validate(json.loads(_strip_code_fence(outcome.value)))
        except (ValueError, ValidationError) as e:
            logger.warning(f"[COMPLETION] Invalid {schema.__name__} response: {e}")
            return None
