"""
LLM client - Gemini / OpenAI / Ollama backends behind one retrying entry point

Gemini and OpenAI are both called through the OpenAI-compatible Chat
Completions API; aiohttp.ClientSession is reused for the backend lifetime.
"""

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from hack_timeline.config.settings import settings

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def clean_llm_response(text: str) -> str:
    """Strip thinking blocks, surrounding quotes and whitespace."""
    if not text:
        return ""
    text = _THINK_RE.sub("", text)
    return text.strip().strip('"').strip()


class LLMCallError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = False, fallback_eligible: bool = False):
        super().__init__(message)
        self.retryable = retryable
        self.fallback_eligible = fallback_eligible


class LLMBackend(ABC):
    name = ""

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, keepalive_timeout=30)
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None),
                connector=connector,
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict:
        timeout = aiohttp.ClientTimeout(total=settings.llm.timeout_seconds)
        session = await self._get_session()
        try:
            async with session.post(url, json=payload, timeout=timeout, headers=headers) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise LLMCallError(
                        f"{self.name} error status={resp.status}: {detail[:300]}",
                        retryable=resp.status == 429 or resp.status >= 500,
                        fallback_eligible=resp.status != 401,
                    )
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LLMCallError(f"{self.name} request failed: {e}", retryable=True, fallback_eligible=True) from e

    @abstractmethod
    async def generate_sync(self, prompt: str, max_tokens: int = 256, **kwargs) -> str:
        ...

    @abstractmethod
    async def health_check(self) -> Dict:
        ...


class ChatCompletionsBackend(LLMBackend):
    """OpenAI-compatible Chat Completions backend (OpenAI, Gemini)"""

    def __init__(self, name: str, base_url: str, api_key: str, model: str):
        super().__init__()
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key.strip()
        self.model = model

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        choices = data.get("choices", [])
        if not choices:
            return ""
        content = choices[0].get("message", {}).get("content", "")
        return content if isinstance(content, str) else ""

    async def generate_sync(self, prompt: str, max_tokens: int = 256, **kwargs) -> str:
        if not self.api_key:
            raise LLMCallError(f"{self.name} api key missing", retryable=False, fallback_eligible=True)
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": kwargs.get("temperature", settings.llm.temperature),
            "max_tokens": max_tokens,
        }
        data = await self._post_json(f"{self.base_url}/chat/completions", payload, self._headers())
        return self._extract_text(data)

    async def health_check(self) -> Dict:
        if not self.api_key:
            return {"status": "unhealthy", "backend": self.name, "error": "missing API key"}
        return {"status": "healthy", "backend": self.name, "model": self.model}


class OllamaBackend(LLMBackend):
    name = "ollama"

    def __init__(self, base_url: str, model: str):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def generate_sync(self, prompt: str, max_tokens: int = 256, **kwargs) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": kwargs.get("temperature", settings.llm.temperature),
                "num_predict": max_tokens,
            },
        }
        data = await self._post_json(f"{self.base_url}/api/generate", payload)
        return data.get("response", "")

    async def health_check(self) -> Dict:
        try:
            session = await self._get_session()
            async with session.get(f"{self.base_url}/api/tags") as resp:
                status = "healthy" if resp.status == 200 else "unhealthy"
                return {"status": status, "backend": "ollama", "model": self.model}
        except Exception as e:
            return {"status": "unhealthy", "backend": "ollama", "error": str(e)}


def build_backend(backend_type: str) -> LLMBackend:
    backend_type = (backend_type or "gemini").strip().lower()
    if backend_type == "openai":
        return ChatCompletionsBackend(
            "openai",
            base_url=settings.llm.openai_base_url,
            api_key=settings.llm.openai_api_key,
            model=settings.llm.openai_model,
        )
    if backend_type == "ollama":
        return OllamaBackend(base_url=settings.llm.ollama_base_url, model=settings.llm.ollama_model)
    if backend_type != "gemini":
        logger.warning("Unknown backend type %s, fallback to gemini", backend_type)
    return ChatCompletionsBackend(
        "gemini",
        base_url=settings.llm.gemini_base_url,
        api_key=settings.llm.gemini_api_key,
        model=settings.llm.gemini_model,
    )


class LLMServiceClient:
    """Single LLM entry point with retry and optional fallback backend"""

    def __init__(self, backend: Optional[LLMBackend] = None, fallback: Optional[LLMBackend] = None):
        self.backend = backend or build_backend(settings.llm.primary_backend)
        self._fallback = fallback
        if self._fallback is None and settings.llm.fallback_enabled:
            self._fallback = build_backend(settings.llm.fallback_backend)
        self._retry_max = max(1, settings.llm.retry_max_attempts)
        self._retry_delay = max(0.0, settings.llm.retry_base_delay_seconds)
        logger.info("LLMServiceClient initialized: primary=%s", self.backend.name)

    async def generate_sync(self, prompt: str, max_tokens: Optional[int] = None, **kwargs) -> str:
        max_tokens = max_tokens or settings.llm.max_tokens
        last_error: Optional[Exception] = None
        for attempt in range(1, self._retry_max + 1):
            try:
                result = await self.backend.generate_sync(prompt, max_tokens, **kwargs)
                return clean_llm_response(result)
            except LLMCallError as e:
                last_error = e
                if e.retryable and attempt < self._retry_max:
                    delay = self._retry_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.3)
                    logger.debug("LLM attempt %d failed, retrying in %.2fs: %s", attempt, delay, e)
                    await asyncio.sleep(delay)
                    continue
                break

        if self._fallback and getattr(last_error, "fallback_eligible", False):
            logger.warning("Primary LLM failed, trying fallback %s: %s", self._fallback.name, last_error)
            result = await self._fallback.generate_sync(prompt, max_tokens, **kwargs)
            return clean_llm_response(result)

        raise last_error or LLMCallError("LLM generation failed", retryable=False)

    async def health_check(self) -> Dict:
        return await self.backend.health_check()

    async def close(self):
        await self.backend.close()
        if self._fallback:
            await self._fallback.close()
