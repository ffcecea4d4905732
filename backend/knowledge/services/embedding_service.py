from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence

from openai import OpenAI

from ..core.config import Settings, get_settings


class OpenAIEmbedder:
    """Embedding collaborator backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = logging.getLogger("knowledge.services.embedding")
        self._openai_client = client
        self.model = model or self.settings.embedding_model
        self.dimensions = dimensions if dimensions is not None else self.settings.embedding_dimension
        self.batch_size = batch_size or self.settings.embedding_batch_size

    def _client(self) -> OpenAI:
        if self._openai_client is None:
            api_key = self.settings.openai_api_key
            base_url = self.settings.openai_base_url
            kwargs = {}
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            self._openai_client = OpenAI(**kwargs)
        return self._openai_client

    def embed_query(self, text: str) -> List[float]:
        return self._create_embeddings([text])[0]

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            embeddings.extend(self._create_embeddings(list(texts[start:start + self.batch_size])))
        return embeddings

    def _create_embeddings(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        start = time.perf_counter()
        params = {"model": self.model, "input": texts}
        if self.dimensions:
            params["dimensions"] = self.dimensions
        response = self._client().embeddings.create(**params)
        duration = time.perf_counter() - start
        self.logger.debug(
            "Generated OpenAI embeddings",
            extra={
                "model": self.model,
                "batch": len(texts),
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return [list(item.embedding) for item in response.data]
