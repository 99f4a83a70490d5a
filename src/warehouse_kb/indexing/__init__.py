"""Ingestion components for the warehouse knowledge base."""

from .chunker import SmartChunker, TextChunk, extract_keywords
from .pipeline import IngestionPipeline, IngestionResult, document_from_file

__all__ = [
    "IngestionPipeline",
    "IngestionResult",
    "SmartChunker",
    "TextChunk",
    "document_from_file",
    "extract_keywords",
]
