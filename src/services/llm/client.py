"""HTTP client for a local Ollama server.

Used by ``OllamaCompleter`` (JSON completions) and ``OllamaEmbedder``
(embeddings). The client does no retrying of its own; callers wrap it in
the shared ``RetryPolicy``.

Example:
    client = OllamaClient(LLMConfig(model="llama3.2"))
    data = await client.complete_json("Extraia atributos ...")
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog
import httpx

from src.config import llm_settings
from src.errors.exceptions import CapabilityError

logger = structlog.get_logger(__name__)


@dataclass
class LLMConfig:
    """Configuration for the Ollama client."""
    model: str = "llama3.2"
    embedding_model: str = "nomic-embed-text"
    base_url: str = "http://localhost:11434"
    timeout: float = 60.0
    temperature: float = 0.1  # Low temperature for consistent results
    max_tokens: int = 2048

    @classmethod
    def from_settings(cls) -> "LLMConfig":
        return cls(
            model=llm_settings.model,
            embedding_model=llm_settings.embedding_model,
            base_url=llm_settings.ollama_url,
            timeout=llm_settings.timeout,
            temperature=llm_settings.temperature,
            max_tokens=llm_settings.max_tokens,
        )


class OllamaClient:
    """Thin async wrapper over the Ollama REST API."""

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig.from_settings()
        self._client: Optional[httpx.AsyncClient] = None
        self._log = logger.bind(component="OllamaClient", model=self.config.model)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def is_available(self) -> bool:
        """Check if Ollama is running."""
        try:
            client = await self._get_client()
            response = await client.get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            self._log.debug("ollama_not_available", error=str(e))
            return False

    async def complete_json(self, prompt: str, system_prompt: Optional[str] = None) -> Dict[str, Any]:
        """Generate a JSON completion.

        Raises:
            httpx.HTTPError: Transport or status failure
            CapabilityError: The model returned no parseable JSON object
        """
        client = await self._get_client()
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",  # Force JSON output
            "options": {
                "temperature": 0.0,
                "num_predict": self.config.max_tokens,
            },
        }
        if system_prompt:
            payload["system"] = system_prompt

        response = await client.post("/api/generate", json=payload)
        response.raise_for_status()
        content = response.json().get("response", "")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            self._log.warning("json_parse_failed", content=content[:200])
            parsed = self._extract_json(content)

        if not isinstance(parsed, dict):
            raise CapabilityError("Completion did not return a JSON object")
        return parsed

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in one request; order is preserved by the API."""
        client = await self._get_client()
        response = await client.post(
            "/api/embed",
            json={"model": self.config.embedding_model, "input": texts},
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise CapabilityError(
                f"Embedding response size mismatch: expected {len(texts)}, "
                f"got {len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )
        return [[float(value) for value in vector] for vector in embeddings]

    def _extract_json(self, content: str) -> Dict[str, Any]:
        """Try to extract a JSON object from content that has extra text."""
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass
        raise CapabilityError("Completion did not contain a JSON object")
