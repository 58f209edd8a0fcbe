"""Creator content ingestion package.

Having this file ensures 'creator_ingest' is recognized as a standard Python
package during test discovery and when installed in editable mode.
"""

__all__: list[str] = []
