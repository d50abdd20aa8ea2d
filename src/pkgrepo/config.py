from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

DEFAULT_EXTENSIONS = [".tgz", ".tbz"]


class ExtractorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(default_factory=lambda: ["pkg_info", "-X"])
    batch_size: int = Field(default=100, ge=1)
    timeout_seconds: float | None = Field(default=300.0, gt=0.0)

    @field_validator("command")
    @classmethod
    def validate_command(cls, value: list[str]) -> list[str]:
        if not value or not value[0].strip():
            raise ValueError("extractor.command must not be empty")
        return value


class MirrorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(default_factory=lambda: ["rsync", "-irz", "--size-only"])

    @field_validator("command")
    @classmethod
    def validate_command(cls, value: list[str]) -> list[str]:
        if not value or not value[0].strip():
            raise ValueError("mirror.command must not be empty")
        return value


class RepositoryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str
    upstream: str | None = None
    keep_versions: int | None = Field(default=None, ge=1)
    extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    forget_missing: bool = True

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("repos[].path must not be empty")
        return normalized

    @field_validator("upstream")
    @classmethod
    def validate_upstream(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, value: list[str]) -> list[str]:
        normalized = [ext.strip().lower() for ext in value if ext.strip()]
        if not normalized:
            raise ValueError("repos[].extensions must not be empty")
        return normalized


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cachedir: str = "data/cache"
    tmpdir: str | None = None
    auth_token: str | None = None
    scan_concurrency: int = Field(default=16, ge=1)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    mirror: MirrorConfig = Field(default_factory=MirrorConfig)
    repos: dict[str, RepositoryConfig]

    @model_validator(mode="after")
    def validate_repos(self) -> AppConfig:
        if not self.repos:
            raise ValueError("at least one repository must be configured in repos")
        for repo_id in self.repos:
            if not repo_id.strip() or "/" in repo_id:
                raise ValueError(f"invalid repository id: {repo_id!r}")
        return self

    def get_repo(self, repo_id: str | None) -> tuple[str, RepositoryConfig]:
        if repo_id is None:
            if len(self.repos) != 1:
                raise ValueError("several repositories configured; choose one with --repo")
            repo_id = next(iter(self.repos))
        try:
            return repo_id, self.repos[repo_id]
        except KeyError as exc:
            raise ValueError(f"Unknown repository: {repo_id}") from exc


def load_config(path: str | Path) -> AppConfig:
    raw = Path(path).read_text(encoding="utf-8")
    payload = _parse_yaml_or_json(raw)
    try:
        return AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _parse_yaml_or_json(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Configuration is neither JSON nor YAML: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be an object.")
    return parsed
