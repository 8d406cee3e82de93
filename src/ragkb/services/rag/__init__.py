from ragkb.services.rag.ingest import ingest_document, ingest_documents
from ragkb.services.rag.query import search
from ragkb.services.rag.types import IngestionSummary, QueryResponse

__all__ = ["IngestionSummary", "QueryResponse", "ingest_document", "ingest_documents", "search"]
