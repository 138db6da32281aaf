from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "development"
    log_config_path: Optional[Path] = None  # defaults to the packaged logging.yaml
    log_level: str = "INFO"
    log_dir: Path = Path("backend/logs")
    enable_file_logging: bool = True
    enable_json_logs: bool = True

    # Redis document cache
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    document_cache_ttl: Optional[int] = None  # seconds; None keeps entries until the next rebuild

    # Sparse index
    bm25_index_path: Path = Path("backend/storage/bm25-index.json")
    bm25_k1: float = 1.5
    bm25_b: float = 0.75
    bm25_epsilon: float = 0.25
    bm25_field_weights: Dict[str, float] = Field(default_factory=lambda: {"text": 1.0})

    # Tokenizer
    tokenizer_language: str = "english"
    tokenizer_negation_window: int = 2
    tokenizer_stemming: bool = True

    # Hybrid retrieval defaults
    retrieval_final_k: int = 3
    retrieval_pre_rerank_k: int = 10
    fusion_mode: str = "rrf"  # "rrf" | "weighted"
    fusion_alpha: float = 0.5  # dense weight in weighted mode
    rrf_constant: int = 60
    rrf_absent_rank: Optional[int] = None  # None = rank as if just outside pre_rerank_k

    # Chroma (dense retriever)
    chroma_server_host: Optional[str] = None
    chroma_server_port: Optional[int] = None
    chroma_server_ssl: bool = False
    chroma_server_api_key: Optional[str] = None
    chroma_persist_directory: Optional[Path] = Path("backend/storage/chromadb")
    chroma_collection: str = "documents"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
