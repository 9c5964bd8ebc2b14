"""Range-streaming and search proxy for browsing object storage buckets."""

from .app import create_app
from .gateway import ObjectRef, S3Gateway, StorageGateway
from .proxy import RangeProxy, parse_range
from .search import SearchResult, search_objects
from .settings import ServerSettings, StorageSettings

__all__ = [
    "ObjectRef",
    "RangeProxy",
    "S3Gateway",
    "SearchResult",
    "ServerSettings",
    "StorageGateway",
    "StorageSettings",
    "create_app",
    "parse_range",
    "search_objects",
]
