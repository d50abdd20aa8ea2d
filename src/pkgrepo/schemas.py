from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_utc() -> datetime:
    return datetime.now(tz=UTC)


def normalize_datetime(value: datetime) -> datetime:
    """Return ``value`` in UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


RAW_INFO_ENCODING = "utf-8"
RAW_INFO_ERRORS = "surrogateescape"


def encode_raw_info(raw_info: str) -> bytes:
    """Encode raw metadata back to the exact bytes the extractor printed."""
    return raw_info.encode(RAW_INFO_ENCODING, errors=RAW_INFO_ERRORS)


def decode_raw_info(raw: bytes | str) -> str:
    if isinstance(raw, str):
        return raw
    return raw.decode(RAW_INFO_ENCODING, errors=RAW_INFO_ERRORS)


class DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


def split_package_identifier(pkgname: str) -> tuple[str, str] | None:
    """Split ``foo-bar-1.0nb2`` into ``("foo-bar", "1.0nb2")``.

    Returns ``None`` when the identifier has no ``-version`` suffix.
    """
    base, sep, version = pkgname.strip().rpartition("-")
    if not sep or not base or not version:
        return None
    return base, version


def normalize_categories(categories: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for category in categories:
        label = category.strip()
        if not label or label in seen:
            continue
        seen.add(label)
        ordered.append(label)
    return ordered


@dataclass(slots=True, frozen=True)
class ExtractedMetadata:
    raw_info: str
    pkgname: str | None = None
    package_base_name: str | None = None
    package_version: str | None = None
    categories: list[str] = field(default_factory=list)

    @classmethod
    def from_fields(
        cls,
        *,
        raw_info: str,
        pkgname: str | None,
        categories: list[str],
    ) -> ExtractedMetadata:
        base_name = version = None
        if pkgname:
            split = split_package_identifier(pkgname)
            if split is not None:
                base_name, version = split
        return cls(
            raw_info=raw_info,
            pkgname=pkgname or None,
            package_base_name=base_name,
            package_version=version,
            categories=normalize_categories(categories),
        )


class ArtifactRecord(DTOBase):
    filename: str
    filesize: int = Field(ge=0)
    pkgname: str | None = None
    package_base_name: str | None = None
    package_version: str | None = None
    categories: list[str] = Field(default_factory=list)
    raw_info: str = ""
    updated_at: datetime | None = None

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or "/" in normalized or normalized in {".", ".."}:
            raise ValueError("filename must be a plain basename")
        return normalized

    @field_validator("categories", mode="after")
    @classmethod
    def validate_categories(cls, value: list[str]) -> list[str]:
        return normalize_categories(value)

    @field_validator("updated_at", mode="after")
    @classmethod
    def validate_updated_at(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return normalize_datetime(value)

    @property
    def is_pending(self) -> bool:
        return self.raw_info == ""

    @property
    def is_fresh(self) -> bool:
        return not self.is_pending
