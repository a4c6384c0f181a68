"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document loading and frontmatter extraction
- Token-window chunking with overlap
- Batched embedding generation
- FAISS vector storage with SQLite persistence
- Semantic retrieval and prompt assembly
- Orchestration of ingestion and question answering
"""
