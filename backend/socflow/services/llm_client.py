import json
from typing import Any, Dict, Optional

import httpx

from socflow.core.config import settings


class LLMClient:
    """Thin Ollama client used by agents and analysts in assist mode."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.ollama_url = url or settings.OLLAMA_URL
        self.model = model or settings.OLLAMA_MODEL
        self.timeout = timeout or settings.OLLAMA_TIMEOUT_SECONDS
        self.transport = transport

    async def ask(self, prompt: str) -> str:
        url = f"{self.ollama_url}/api/generate"

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
            return data.get("response", "")

    async def check_ready(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5, transport=self.transport) as client:
                r = await client.get(f"{self.ollama_url}/api/tags")
                return r.status_code == 200
        except httpx.HTTPError:
            return False

    def _clean_llm_output(self, text: str) -> str:
        """
        Removes markdown code fences like ```json ... ``` so the body parses as JSON.
        """
        if not text:
            return ""
        cleaned = text.strip()
        cleaned = cleaned.replace("```json", "").replace("```JSON", "")
        return cleaned.replace("```", "").strip()

    def _extract_json_from_text(self, text: str) -> str:
        """
        Models sometimes wrap JSON in prose; keep the outermost object block.
        """
        if not text:
            return ""
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end != -1 and end > start:
            return text[start:end + 1]
        return text

    async def ask_json(self, prompt: str) -> Dict[str, Any]:
        """Raises httpx.HTTPError or ValueError when the model output is unusable."""
        raw = await self.ask(prompt)
        extracted = self._extract_json_from_text(self._clean_llm_output(raw))
        parsed = json.loads(extracted)
        if not isinstance(parsed, dict):
            raise ValueError("model returned non-object JSON")
        return parsed


def normalize_vote(value: Any) -> str:
    v = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
    if v in ("true-positive", "tp", "malicious", "true"):
        return "true-positive"
    if v in ("false-positive", "fp", "benign", "false"):
        return "false-positive"
    return "inconclusive"


def clamp_confidence(value: Any, default: int = 50) -> int:
    try:
        score = int(value)
    except (TypeError, ValueError):
        score = default
    return int(max(0, min(100, score)))
