"""Hierarchical document knowledge base with hybrid lexical/vector retrieval."""

__version__ = "0.1.0"
