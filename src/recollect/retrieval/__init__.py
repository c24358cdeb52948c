"""Durable storage and hybrid retrieval of memory fragments."""

from recollect.retrieval.access import RedisAccessStore
from recollect.retrieval.engine import AccessStore
from recollect.retrieval.engine import RetrievalEngine
from recollect.retrieval.engine import VectorStore
from recollect.retrieval.qdrant import build_qdrant_client
from recollect.retrieval.qdrant import QdrantVectorStore
from recollect.retrieval.schemas import AccessInfo
from recollect.retrieval.schemas import DType
from recollect.retrieval.schemas import SearchResult
from recollect.retrieval.schemas import SparseVector
from recollect.retrieval.schemas import StoredFragment
from recollect.retrieval.scorer import Scorer

__all__ = [
    "AccessInfo",
    "AccessStore",
    "DType",
    "QdrantVectorStore",
    "RedisAccessStore",
    "RetrievalEngine",
    "Scorer",
    "SearchResult",
    "SparseVector",
    "StoredFragment",
    "build_qdrant_client",
]
