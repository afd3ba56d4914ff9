"""Environment-based configuration for imagex."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


@dataclass(frozen=True)
class AllowedBucketSet:
    """Ordered, read-only set of buckets the service may read from.

    Order matters: the first entry is the fallback bucket for requests that
    do not name an allowed one.
    """

    names: tuple[str, ...] = ()

    @classmethod
    def of(cls, names: Iterable[str]) -> AllowedBucketSet:
        return cls(tuple(dict.fromkeys(name for name in names if name)))

    @classmethod
    def from_csv(cls, value: str) -> AllowedBucketSet:
        return cls.of(part.strip() for part in value.split(","))

    @property
    def first(self) -> str | None:
        return self.names[0] if self.names else None

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)


class Settings(BaseSettings):
    """Application settings loaded from IMAGEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Comma-separated allow-list; the first entry is the default bucket
    source_buckets: str = ""

    # Input limits (None = engine default, 0 = unlimited)
    size_limit: int | None = Field(default=None, ge=0)

    # Output negotiation
    auto_webp: bool = False
    cache_control: str = "max-age=31536000,public"

    # Signed requests (secret retrieval happens outside this service)
    enable_signature: bool = False
    signature_secret: str | None = None

    # CUSTOM request rewrite
    rewrite_match_pattern: str | None = None
    rewrite_substitution: str | None = None

    # AWS
    aws_region: str | None = None

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    @property
    def allowed_buckets(self) -> AllowedBucketSet:
        return AllowedBucketSet.from_csv(self.source_buckets)

    @property
    def limit_input_pixels(self) -> int | bool:
        """Pixel limit handed to the image engine: True keeps its default, False disables it."""
        if self.size_limit is None:
            return True
        return self.size_limit or False


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
