from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from fcsearch.domain.models import RefreshOutcome


CHANNEL_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class ChannelConfig(BaseModel):
    """
    Where one channel's feed comes from.

    Either ``path`` (a directory holding options.json and packages.json) or
    both ``options_url`` and ``packages_url`` must be given.
    """

    name: str = Field(
        pattern=CHANNEL_NAME_PATTERN,
        max_length=64,
        description="Short human-chosen label, e.g. a release branch name.",
    )
    path: Optional[Path] = Field(
        default=None,
        description="Directory containing options.json and packages.json.",
    )
    options_url: Optional[str] = Field(
        default=None,
        description="HTTP(S) URL of the channel's options.json.",
    )
    packages_url: Optional[str] = Field(
        default=None,
        description="HTTP(S) URL of the channel's packages.json.",
    )

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "ChannelConfig":
        has_urls = self.options_url is not None or self.packages_url is not None
        if self.path is not None and has_urls:
            raise ValueError(f"channel '{self.name}': give either 'path' or URLs, not both")
        if self.path is None:
            if not (self.options_url and self.packages_url):
                raise ValueError(
                    f"channel '{self.name}': needs 'path' or both 'options_url' and 'packages_url'"
                )
        return self


class ServiceConfig(BaseModel):
    """
    Top-level configuration of the search service.
    Persisted at: <STATE_DIR>/config.yaml
    """

    refresh_interval_seconds: int = Field(
        default=5 * 60 * 60,
        ge=60,
        description="How often every channel is rebuilt from its feed.",
    )
    refresh_timeout_seconds: float = Field(
        default=600.0,
        ge=1.0,
        description="A refresh running longer than this is abandoned.",
    )
    page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Upper bound on the number of results in one page.",
    )
    default_limit: int = Field(
        default=15,
        ge=1,
        description="Results per page when the caller does not ask for a limit.",
    )
    channels: List[ChannelConfig] = Field(
        default_factory=list,
        description="Channels served by this instance.",
    )

    @model_validator(mode="after")
    def _check_channels(self) -> "ServiceConfig":
        names = [c.name for c in self.channels]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate channel names: {', '.join(duplicates)}")
        if self.default_limit > self.page_size:
            self.default_limit = self.page_size
        return self


class ChannelBookkeeping(BaseModel):
    """
    Operational state of one channel that survives restarts.

    The searchable index itself is never stored; it is rebuilt from the feed.
    """

    name: str
    last_good_sequence: int = 0
    last_refresh_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_outcome: RefreshOutcome = RefreshOutcome.NEVER
    last_error: Optional[str] = None
    options_revision: Optional[str] = None
    packages_revision: Optional[str] = None
