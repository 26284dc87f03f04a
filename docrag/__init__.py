"""
docrag

Retrieval-augmented question answering over uploaded documents.

Pipeline:
- Embed the question and search the vector store
- Optionally let a small model filter and condense the hits
- Synthesize a grounded answer with a local CLI tool or a cloud model

Usage:
    from docrag.common import load_config, EmbeddingService, InMemoryVectorStore
    from docrag.retriever import QueryCoordinator
"""

__version__ = "0.1.0"
