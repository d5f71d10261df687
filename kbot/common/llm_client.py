"""
Provider-agnostic async LLM client for the Knowledge Bot.

One ``generate`` call, three backends:
- anthropic: ``AsyncAnthropic().messages.create``
- openai: ``AsyncOpenAI().chat.completions.create``
- google: ``GenerativeModel.generate_content_async``

A provider without an API key (or without its SDK installed) leaves the
client unavailable instead of failing at startup.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("kbot.common.llm_client")

PROVIDERS = ("anthropic", "openai", "google")


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client: Any = None
        self._google_models: Dict[str, Any] = {}

        if self.provider == "auto":
            raise ValueError(
                '"auto" provider must be resolved before creating LLMClient. '
                "Use from_config() to pick the first provider with a key."
            )
        if self.provider not in PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        api_key = {
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
            "google": google_api_key,
        }[self.provider]
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = getattr(self, f"_connect_{self.provider}")(api_key)
        except ImportError:
            logger.warning("%s SDK not installed, LLM client unavailable", self.provider)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @staticmethod
    def _connect_anthropic(api_key: str):
        import anthropic

        return anthropic.AsyncAnthropic(api_key=api_key)

    @staticmethod
    def _connect_openai(api_key: str):
        from openai import AsyncOpenAI

        return AsyncOpenAI(api_key=api_key)

    @staticmethod
    def _connect_google(api_key: str):
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        # The module itself; models are built per system prompt
        return genai

    @classmethod
    def from_config(cls, llm_config) -> "LLMClient":
        """Build a client from an ``LLMConfig``, resolving ``auto`` by key presence."""
        keys = {
            "anthropic": llm_config.anthropic_api_key,
            "openai": llm_config.openai_api_key,
            "google": llm_config.google_api_key,
        }
        provider = (llm_config.provider or "anthropic").lower()
        if provider == "auto":
            provider = next((name for name in PROVIDERS if keys[name]), "anthropic")

        models = {
            "anthropic": llm_config.anthropic_model,
            "openai": llm_config.openai_model,
            "google": llm_config.google_model,
        }
        return cls(
            provider=provider,
            model=models.get(provider, ""),
            anthropic_api_key=keys["anthropic"] or None,
            openai_api_key=keys["openai"] or None,
            google_api_key=keys["google"] or None,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
    ) -> str:
        """
        Generate a completion for ``prompt``.

        Raises:
            RuntimeError: if no provider client is available
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        if self.provider == "anthropic":
            return await self._generate_anthropic(prompt, system, max_tokens, timeout)
        if self.provider == "openai":
            return await self._generate_openai(prompt, system, max_tokens, timeout)
        if self.provider == "google":
            return await self._generate_google(prompt, system, max_tokens, timeout)
        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")

    async def _generate_anthropic(self, prompt, system, max_tokens, timeout) -> str:
        extra = {"system": system} if system else {}
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        return response.content[0].text.strip()

    async def _generate_openai(self, prompt, system, max_tokens, timeout) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        return (response.choices[0].message.content or "").strip()

    async def _generate_google(self, prompt, system, max_tokens, timeout) -> str:
        key = hashlib.md5((system or "").encode()).hexdigest()
        model = self._google_models.get(key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._google_models[key] = self._client.GenerativeModel(**options)

        response = await model.generate_content_async(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text.strip()
