from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Knowledge Retrieval"
    environment: str = "development"
    log_config_path: Optional[Path] = None
    log_level: str = "INFO"
    log_dir: Path = Path("backend/logs")
    enable_file_logging: bool = True
    enable_json_logs: bool = True

    # Persistent chunk store
    database_url: str = Field(
        default="sqlite:///backend/knowledge/storage/knowledge.db",
        validation_alias="DATABASE_URL",
    )
    database_echo: bool = False

    # Embeddings
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: Optional[int] = None  # Enables the query-vector dimension check
    embedding_batch_size: int = 100

    # Chroma
    chroma_server_host: Optional[str] = None
    chroma_server_port: Optional[int] = None
    chroma_server_ssl: bool = False
    chroma_server_api_key: Optional[str] = None
    chroma_persist_directory: Optional[Path] = Path("backend/knowledge/storage/chromadb")
    chroma_collection: str = "knowledge"

    # Tokenizer
    tokenizer_segmenter: str = "jieba"  # "jieba" | "ngram"
    max_keywords: int = 10

    # Hybrid retrieval
    retrieval_limit: int = 5
    min_similarity: float = 0.3
    rrf_k: int = 60
    vector_weight: float = 0.7  # Weight for vector search in RRF
    keyword_weight: float = 0.3  # Weight for keyword search in RRF
    use_bm25_rerank: bool = False
    bm25_weight: float = 0.3  # Share of the BM25 score in the reranked score
    slow_query_threshold_ms: float = 500.0
    retrieval_max_workers: int = 8

    # Lexical (BM25) index cache
    bm25_k1: float = 1.2
    bm25_b: float = 0.75
    lexical_idle_timeout_seconds: float = 30 * 60
    lexical_sweep_interval_seconds: float = 5 * 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
