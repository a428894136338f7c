"""Continuation token encoding for paged queries."""

from .codec import PageCodec

__all__ = ["PageCodec"]
