from __future__ import annotations

from typing import Optional

from openai import OpenAI

from .config import LlmConfig
from .errors import ConfigError, ServiceError


def chat_completions_endpoint(base_url: str) -> str:
    base = (base_url or "").strip().rstrip("/")
    if not base.endswith("/v1"):
        base = base + "/v1"
    return base


class CorrectionClient:
    """OpenAI-compatible chat client used by the cleanup pass."""

    def __init__(self, cfg: LlmConfig, client: Optional[OpenAI] = None) -> None:
        if not cfg.has_api_key:
            raise ConfigError("Missing OPENAI_API_KEY for the correction service.")
        self._cfg = cfg
        self._client = client or OpenAI(
            api_key=cfg.api_key,
            base_url=chat_completions_endpoint(cfg.base_url),
            timeout=cfg.timeout_s,
            max_retries=0,
        )

    def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        json_mode: bool = True,
    ) -> str:
        kwargs: dict = {
            "model": self._cfg.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "timeout": self._cfg.timeout_s,
        }
        if json_mode:
            # Ask for JSON object output if the backend supports it.
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = self._client.chat.completions.create(**kwargs)
        except Exception as e:  # noqa: BLE001
            raise ServiceError(f"LLM request failed: {e}") from e
        try:
            return resp.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise ServiceError(f"LLM returned an unexpected payload: {e}") from e
