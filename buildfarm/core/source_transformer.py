"""
Source Transformer contract.

A transformer receives the project root and the route allow-list and may
rewrite the application source (strip unused routes, inject a route guard).
It reports whether it changed anything. The pipeline treats both a False
result and an exception as non-fatal and builds the original source.
"""
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class SourceTransformer(Protocol):
    def transform(self, project_root: Path, allowed_routes: list[str]) -> bool:
        ...


class NoopSourceTransformer:
    """Default transformer: leaves the source untouched."""

    def transform(self, project_root: Path, allowed_routes: list[str]) -> bool:
        logger.debug(f"source_transform_skipped routes={len(allowed_routes)}")
        return False
