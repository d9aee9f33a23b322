"""
Read access to the mirrored catalog.

This package is responsible for:
* Exact lookups of packages and options in the committed generation.
* Relevance-ordered substring search.
* Reporting how stale the mirror is.
"""
