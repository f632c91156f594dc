"""External collaborators: artifact storage and metadata extraction."""

from .storage import ArtifactFile, ArtifactStore, LocalArtifactStore
from .metadata import (
    LocalMetadataExtractor,
    MetadataExtractor,
    RemoteMetadataExtractor,
)

__all__ = [
    "ArtifactFile",
    "ArtifactStore",
    "LocalArtifactStore",
    "LocalMetadataExtractor",
    "MetadataExtractor",
    "RemoteMetadataExtractor",
]
