"""
RAG (Retrieval-Augmented Generation) module for course materials.

This module provides:
- PDF download, text extraction and chunking
- Text embeddings
- Chunk vector storage via Qdrant
- Ingestion of a material end to end
- Similarity retrieval and grounded answers
"""

from .parser import DocumentPipeline, TextChunk, chunk_text
from .embeddings import EmbeddingClient
from .store import ChunkStore
from .ingest import IngestionService
from .engine import QueryResult, RetrievalEngine, cosine_similarity

__all__ = [
    "DocumentPipeline",
    "TextChunk",
    "chunk_text",
    "EmbeddingClient",
    "ChunkStore",
    "IngestionService",
    "QueryResult",
    "RetrievalEngine",
    "cosine_similarity",
]
