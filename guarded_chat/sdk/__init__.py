"""
Collaborator adapters for Guarded Chat.

Connects the pipeline to the embedding, similarity search, and
generation services it relies on.
"""

from .openai_client import OpenAIEmbedder, OpenAIGenerator
from .qdrant_client import QdrantSearch

__all__ = ["OpenAIEmbedder", "OpenAIGenerator", "QdrantSearch"]
