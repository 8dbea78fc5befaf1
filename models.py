"""Models advertised by the bridge and their mapping to Notion model ids."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ModelInfo:
    """A Notion AI model exposed through /v1/models."""

    id: str
    display_name: str
    aliases: tuple = ()

    def matches(self, name: str) -> bool:
        n = name.strip().lower()
        return n == self.id.lower() or n == self.display_name.lower() or n in self.aliases

    def to_openai_dict(self, created: Optional[int] = None) -> Dict[str, Any]:
        """Convert to an OpenAI model list entry."""
        return {
            "id": self.id,
            "object": "model",
            "created": created if created is not None else int(time.time()),
            "owned_by": "notion",
            "display_name": self.display_name,
        }


# Notion names its models after pastries.
SUPPORTED_MODELS: List[ModelInfo] = [
    ModelInfo("oatmeal-cookie", "GPT 5.2", ("gpt-5.2", "gpt-5")),
    ModelInfo("apple-danish", "Claude Opus 4.5", ("claude-opus-4.5", "claude-opus")),
    ModelInfo("gateau-roule", "GEMINI 3 Pro", ("gemini-3-pro", "gemini")),
]


class ModelCatalog:
    """Resolve requested model names to Notion model ids."""

    def __init__(self, default_model: str, models: Optional[List[ModelInfo]] = None) -> None:
        self._default = default_model
        self._models = list(models if models is not None else SUPPORTED_MODELS)

    @property
    def models(self) -> List[ModelInfo]:
        return list(self._models)

    def resolve(self, requested: Any) -> str:
        """
        Map a client model name to the id Notion expects.

        Known ids, display names and aliases map to the catalogue id; any other
        non-empty name passes through unchanged so new Notion models can be
        used before they are listed here. Empty names get the default model.
        """
        name = str(requested or "").strip()
        if not name:
            return self._default
        for m in self._models:
            if m.matches(name):
                return m.id
        return name

    def to_openai_list(self) -> Dict[str, Any]:
        now = int(time.time())
        return {"object": "list", "data": [m.to_openai_dict(now) for m in self._models]}
