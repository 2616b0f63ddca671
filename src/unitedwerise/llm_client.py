from __future__ import annotations

import json
import os
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from .config import LLMConfig
from .logger import get_logger
from .prometheus_metrics import track_llm_request

log = get_logger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model reply."""
    if not text:
        return None
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        obj = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


class LLMClient:
    """Chat completion client for Azure OpenAI and OpenAI-compatible APIs.

    ``complete`` returns ``None`` instead of raising when the provider is
    ``dummy``, credentials are missing or every attempt failed. Callers treat
    ``None`` as "no model available" and take their heuristic path.
    """

    def __init__(self, config: Optional[LLMConfig] = None) -> None:
        self.config = config or LLMConfig()
        self.provider = (self.config.provider or "dummy").lower().strip()
        if self.provider not in {"dummy", "azure", "openai"}:
            log.warning("Unknown LLM provider '%s'; using dummy", self.config.provider)
            self.provider = "dummy"

    @property
    def enabled(self) -> bool:
        if self.provider == "azure":
            return bool(os.getenv("AZURE_OPENAI_ENDPOINT") and os.getenv("AZURE_OPENAI_API_KEY"))
        if self.provider == "openai":
            return bool(os.getenv("OPENAI_API_KEY"))
        return False

    def _request(self) -> tuple[str, Dict[str, str], Dict[str, Any]]:
        if self.provider == "azure":
            endpoint = os.environ["AZURE_OPENAI_ENDPOINT"].rstrip("/")
            deployment = self.config.model or os.getenv("AZURE_OPENAI_DEPLOYMENT") or "gpt-4o-mini"
            url = (
                f"{endpoint}/openai/deployments/{deployment}/chat/completions"
                f"?api-version={self.config.api_version}"
            )
            headers = {"api-key": os.environ["AZURE_OPENAI_API_KEY"], "Content-Type": "application/json"}
            return url, headers, {}
        base_url = os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1"
        model = self.config.model or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        headers = {"Authorization": f"Bearer {os.environ['OPENAI_API_KEY']}", "Content-Type": "application/json"}
        return f"{base_url.rstrip('/')}/chat/completions", headers, {"model": model}

    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 300,
        temperature: Optional[float] = None,
    ) -> Optional[str]:
        if not self.enabled:
            return None

        url, headers, extra = self._request()
        body: Dict[str, Any] = {
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature if temperature is None else temperature,
            **extra,
        }
        max_attempts = max(1, self.config.max_attempts)
        backoff = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                with httpx.Client(timeout=self.config.timeout_seconds) as client:
                    resp = client.post(url, headers=headers, json=body)
                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    if attempt < max_attempts:
                        time.sleep(backoff)
                        backoff *= 2
                        continue
                resp.raise_for_status()
                data = resp.json()
                choices = data.get("choices") or []
                if not choices:
                    log.warning("LLM response contained no choices")
                    return None
                track_llm_request(self.provider, "success")
                return str(choices[0].get("message", {}).get("content") or "").strip()
            except (httpx.HTTPError, ValueError) as e:
                log.error("LLM completion attempt %d failed: %s", attempt, e)
                if attempt < max_attempts:
                    time.sleep(backoff)
                    backoff *= 2
                    continue
                track_llm_request(self.provider, "error")
                return None
        return None

    def ask(self, prompt: str, system: Optional[str] = None, **kwargs: Any) -> Optional[str]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self.complete(messages, **kwargs)

    def ask_json(self, prompt: str, system: Optional[str] = None, **kwargs: Any) -> Optional[Dict[str, Any]]:
        return extract_json(self.ask(prompt, system=system, **kwargs))
