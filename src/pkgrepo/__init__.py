"""Package repository reconciliation and metadata cache."""

from .config import AppConfig, RepositoryConfig, load_config
from .errors import (
    ExtractorError,
    MetadataParseError,
    MirrorError,
    PkgRepoError,
    UploadNotAuthorizedError,
)
from .repository import Repository
from .schemas import ArtifactRecord, ExtractedMetadata, split_package_identifier

__all__ = [
    "AppConfig",
    "ArtifactRecord",
    "ExtractedMetadata",
    "ExtractorError",
    "MetadataParseError",
    "MirrorError",
    "PkgRepoError",
    "Repository",
    "RepositoryConfig",
    "UploadNotAuthorizedError",
    "load_config",
    "split_package_identifier",
]
