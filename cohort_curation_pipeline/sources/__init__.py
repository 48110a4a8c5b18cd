"""Source adapters."""

from .adapter import DuckDBSourceAdapter, build_select_query, quote_identifier

__all__ = ["DuckDBSourceAdapter", "build_select_query", "quote_identifier"]
