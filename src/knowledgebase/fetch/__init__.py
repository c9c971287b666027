"""Guarded access to untrusted URLs and uploaded objects."""

from .fetcher import FetchedResource, GuardedFetcher
from .guard import UrlGuard, ValidatedUrl, check_url_syntax, is_disallowed_address
from .storage import ObjectStorageReader, StoredObject

__all__ = [
    "FetchedResource",
    "GuardedFetcher",
    "ObjectStorageReader",
    "StoredObject",
    "UrlGuard",
    "ValidatedUrl",
    "check_url_syntax",
    "is_disallowed_address",
]
