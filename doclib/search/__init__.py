from doclib.search.base import BulkResult, SearchBackend
from doclib.search.elasticsearch import ElasticsearchBackend
from doclib.search.synchronizer import SearchIndexSynchronizer, parse_tags

__all__ = [
    "SearchBackend",
    "BulkResult",
    "ElasticsearchBackend",
    "SearchIndexSynchronizer",
    "parse_tags",
]
