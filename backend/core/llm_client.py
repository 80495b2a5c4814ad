import json
import os
import time
import logging
from typing import List, Optional, Dict, Any
from enum import Enum

from core.errors import GenerationError


class LLMProvider(str, Enum):
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"


class LLMConfig:
    def __init__(
        self,
        provider: LLMProvider = LLMProvider.OPENAI,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        chat_max_tokens: Optional[int] = None,
        chat_temperature: Optional[float] = None,
        request_timeout: Optional[float] = None,
    ):
        self.provider = provider
        default_key = os.getenv("OPENAI_API_KEY")
        if provider == LLMProvider.DEEPSEEK:
            default_key = os.getenv("DEEPSEEK_API_KEY") or default_key
        elif provider == LLMProvider.GEMINI:
            default_key = os.getenv("GEMINI_API_KEY") or default_key
        self.api_key = default_key if api_key is None else api_key
        default_chat_max_tokens = _safe_positive_int(os.getenv("LLM_MAX_TOKENS"), 32768)
        default_chat_temperature = _safe_temperature(os.getenv("LLM_TEMPERATURE"), 0.75)

        if provider == LLMProvider.DEEPSEEK:
            self.base_url = base_url or os.getenv("DEEPSEEK_BASE_URL") or "https://api.deepseek.com"
            self.model = model or "deepseek-chat"
            default_chat_max_tokens = _safe_positive_int(os.getenv("DEEPSEEK_MAX_TOKENS"), 8192)
        elif provider == LLMProvider.GEMINI:
            self.base_url = base_url or "https://generativelanguage.googleapis.com/v1beta/openai/"
            self.model = model or "gemini-2.0-flash"
        else:
            self.base_url = base_url or "https://api.openai.com/v1"
            self.model = model or "gpt-4o-mini"

        self.chat_max_tokens = _safe_positive_int(chat_max_tokens, default_chat_max_tokens)
        self.chat_temperature = _safe_temperature(chat_temperature, default_chat_temperature)
        self.request_timeout = float(request_timeout or 180.0)


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except (TypeError, ValueError):
        pass
    return fallback


def _safe_temperature(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
        if parsed < 0:
            return 0.0
        if parsed > 2:
            return 2.0
        return parsed
    except (TypeError, ValueError):
        return fallback


class LLMClient:
    """Synchronous chat client; async callers wrap ``chat`` in ``asyncio.to_thread``."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None
        self._logger = logging.getLogger("chapterforge.llm")
        self._offline_warnings: set[str] = set()

    @property
    def is_offline(self) -> bool:
        return not self.config.api_key

    def _warn_offline_once(self, reason: str):
        if reason in self._offline_warnings:
            return
        self._offline_warnings.add(reason)
        self._logger.warning(
            "llm offline mode provider=%s model=%s reason=%s",
            self.config.provider.value,
            self.config.model,
            reason,
        )

    def _get_client(self):
        if self._client is not None:
            return self._client

        from openai import OpenAI
        self._client = OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )
        return self._client

    def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.config.api_key:
            self._warn_offline_once("missing_api_key")
            return self._offline_chat(messages, json_mode=json_mode)

        actual_model = model or self.config.model
        started = time.perf_counter()
        kwargs: Dict[str, Any] = {
            "model": actual_model,
            "messages": messages,
            "temperature": _safe_temperature(temperature, self.config.chat_temperature),
            "max_tokens": _safe_positive_int(max_tokens, self.config.chat_max_tokens),
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            client = self._get_client()
            response = client.chat.completions.create(**kwargs)
            content = response.choices[0].message.content
        except Exception as exc:
            self._logger.warning(
                "llm chat remote failed provider=%s model=%s latency_ms=%.2f error=%s",
                self.config.provider.value,
                actual_model,
                (time.perf_counter() - started) * 1000,
                exc,
            )
            raise GenerationError(f"{self.config.provider.value} request failed: {exc}") from exc

        if not content or not content.strip():
            raise GenerationError(f"{self.config.provider.value} returned an empty response")
        self._logger.info(
            "llm chat remote success provider=%s model=%s json=%s latency_ms=%.2f chars=%d",
            self.config.provider.value,
            actual_model,
            json_mode,
            (time.perf_counter() - started) * 1000,
            len(content),
        )
        return content

    def _offline_chat(self, messages: List[Dict[str, str]], json_mode: bool = False) -> str:
        # Keep offline outputs compact and never echo prompts back into drafts.
        if json_mode:
            return json.dumps({"offline": True}, ensure_ascii=False)
        user_parts = [m.get("content", "") for m in messages if m.get("role") == "user"]
        payload = user_parts[-1] if user_parts else ""
        setting = ""
        try:
            parsed = json.loads(payload)
            scene = parsed.get("scene") or {}
            setting = str(scene.get("setting") or "").strip()
        except (ValueError, AttributeError):
            setting = ""
        where = setting or "the old road"
        return (
            f"[offline draft] Wind moved through {where}. "
            "Nobody spoke for a long moment.\n\n"
            "Then the first footstep sounded, and the waiting was over."
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.config.provider.value,
            "model": self.config.model,
            "base_url": self.config.base_url,
            "offline": self.is_offline,
            "max_tokens": self.config.chat_max_tokens,
            "temperature": self.config.chat_temperature,
        }


def create_llm_client(
    provider: str = "openai",
    **kwargs
) -> LLMClient:
    candidate = (provider or "openai").strip().lower()
    try:
        llm_provider = LLMProvider(candidate)
    except ValueError:
        logging.getLogger("chapterforge.llm").warning(
            "unknown llm provider=%s fallback=openai",
            provider,
        )
        llm_provider = LLMProvider.OPENAI
    config = LLMConfig(provider=llm_provider, **kwargs)
    return LLMClient(config)
