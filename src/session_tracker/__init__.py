"""Session tracker: telemetry consolidation and session export.

The core components import without FastAPI; :func:`create_app` loads the web
layer on first use.
"""

from typing import Any

from .archive import ArchiveAssembler, ArchiveHandle, ManifestInputs
from .consolidation import ConsolidationWriter
from .matcher import RecordingMatcher, SearchRoot
from .topics import TopicResolver
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "ArchiveAssembler",
    "ArchiveHandle",
    "ConsolidationWriter",
    "ManifestInputs",
    "RecordingMatcher",
    "SearchRoot",
    "TopicResolver",
    "create_app",
]
