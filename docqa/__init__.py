"""docqa - local retrieval-augmented question answering core."""

__version__ = "0.1.0"
