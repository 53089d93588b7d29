# app/gemini.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .credentials import Credential
from .errors import RetryableProviderError, classify_http_status
from .metrics import rag_llm_latency_seconds
from .retry import RotatingRetryExecutor

logger = logging.getLogger(__name__)

# finishReason values that mean the reply was cut for policy reasons
SAFETY_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

EMBED_BATCH_SIZE = 100


@dataclass
class Generation:
    text: str
    finish_reason: Optional[str] = None
    blocked: Optional[str] = None

    @property
    def safety_truncated(self) -> bool:
        return bool(self.blocked) or (self.finish_reason or "").upper() in SAFETY_FINISH_REASONS


def parse_generation(data: Dict[str, Any]) -> Generation:
    """Pull the first candidate's text and status out of a generateContent response."""
    blocked = (data.get("promptFeedback") or {}).get("blockReason")
    candidates = data.get("candidates") or []
    if not candidates:
        return Generation(text="", finish_reason=None, blocked=blocked)
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    return Generation(text=text.strip(), finish_reason=first.get("finishReason"), blocked=blocked)


class GeminiClient:
    """
    Thin async REST client for the Gemini API.

    Every call is routed through a RotatingRetryExecutor: the key goes in the
    `key` query parameter, HTTP failures are classified into retryable / rate
    limited / fatal, and timeouts count as retryable.
    """

    def __init__(
        self,
        executor: RotatingRetryExecutor,
        *,
        base_url: str,
        model: str,
        embed_model: str,
        timeout: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.executor = executor
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.embed_model = embed_model
        self.timeout = timeout
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, credential: Credential, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{method}"
        try:
            resp = await self._http.post(url, params={"key": credential.value}, json=payload)
        except httpx.TimeoutException as e:
            raise RetryableProviderError(f"timeout calling {method}: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise classify_http_status(resp.status_code, resp.text[:200])
        return resp.json()

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_output_tokens: Optional[int] = None,
        safety_settings: Optional[List[Dict[str, str]]] = None,
    ) -> Generation:
        config: Dict[str, Any] = {"temperature": temperature}
        if max_output_tokens:
            config["maxOutputTokens"] = max_output_tokens
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": config,
        }
        if safety_settings:
            payload["safetySettings"] = safety_settings

        async def work(credential: Credential) -> Dict[str, Any]:
            return await self._post(credential, f"{self.model}:generateContent", payload)

        t0 = time.time()
        try:
            data = await self.executor.run(work, start=0)
        except Exception:
            rag_llm_latency_seconds.labels(status="error", model=self.model).observe(time.time() - t0)
            raise
        rag_llm_latency_seconds.labels(status="ok", model=self.model).observe(time.time() - t0)
        return parse_generation(data)

    async def embed(self, text: str) -> List[float]:
        """Embed one query; starts on a random key to spread load across keys."""
        payload = {
            "model": f"models/{self.embed_model}",
            "content": {"parts": [{"text": text}]},
        }

        async def work(credential: Credential) -> Dict[str, Any]:
            return await self._post(credential, f"{self.embed_model}:embedContent", payload)

        data = await self.executor.run(work, start=random.randrange(self.executor.pool.size()))
        return list((data.get("embedding") or {}).get("values") or [])

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed a list of documents in batches via batchEmbedContents."""
        out: List[List[float]] = []
        for i in range(0, len(texts), EMBED_BATCH_SIZE):
            batch = texts[i:i + EMBED_BATCH_SIZE]
            payload = {
                "requests": [
                    {"model": f"models/{self.embed_model}", "content": {"parts": [{"text": t}]}}
                    for t in batch
                ]
            }

            async def work(credential: Credential, payload=payload) -> Dict[str, Any]:
                return await self._post(credential, f"{self.embed_model}:batchEmbedContents", payload)

            data = await self.executor.run(work, start=random.randrange(self.executor.pool.size()))
            embeddings = data.get("embeddings") or []
            if len(embeddings) != len(batch):
                raise ValueError(f"expected {len(batch)} embeddings, got {len(embeddings)}")
            out.extend(list(e.get("values") or []) for e in embeddings)
        logger.info("Embedded %d texts in %d batch(es)", len(texts), -(-len(texts) // EMBED_BATCH_SIZE))
        return out
