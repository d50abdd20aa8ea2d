from __future__ import annotations


class PkgRepoError(Exception):
    """Base class for repository errors."""


class ExtractorError(PkgRepoError):
    """The metadata extraction tool failed for a batch."""


class MetadataParseError(ExtractorError):
    """The extraction tool produced output that cannot be attributed to the batch."""


class MirrorError(PkgRepoError):
    """The mirroring tool could not be run or exited with a failure."""


class UploadNotAuthorizedError(PkgRepoError):
    """An upload token did not match the configured secret."""
