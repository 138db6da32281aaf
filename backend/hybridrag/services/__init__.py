from .cache_service import DocumentCache, document_cache_key

__all__ = ["DocumentCache", "document_cache_key"]
