"""
Hybrid sparse + dense retrieval.

Sparse BM25 index with a Redis document cache, fused with an external
dense retriever through Reciprocal Rank Fusion or weighted score fusion.
"""

__version__ = "0.1.0"
