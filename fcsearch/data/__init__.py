"""
Feed loading, indexing and the live channel registry.

This package is responsible for:
* Determining the state directory (via env var + sensible default).
* Loading and persisting the service configuration.
* Turning raw feed documents into validated records and immutable indexes.
* Publishing those indexes and rebuilding them in the background.
"""
