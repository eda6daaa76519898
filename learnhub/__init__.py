"""
LearnHub material ingestion and retrieval core.
"""

from .config import paths, rag_settings, storage_settings, worker_settings
from .logging_config import logger

__all__ = ["paths", "rag_settings", "storage_settings", "worker_settings", "logger"]
