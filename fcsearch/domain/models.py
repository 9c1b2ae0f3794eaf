from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fcsearch.domain.text_utils import FIELD_SEPARATOR, declaration_url, normalize_text, render_value


class RecordKind(str, Enum):
    PACKAGE = "package"
    OPTION = "option"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class LicenseInfo(BaseModel):
    """
    One license attached to a package.

    Feeds carry either a verbatim string or an informative object; both are
    normalized into this shape.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    verbatim: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")
    short_name: Optional[str] = Field(default=None, alias="shortName")
    spdx_id: Optional[str] = Field(default=None, alias="spdxId")
    url: Optional[str] = None
    free: Optional[bool] = None
    redistributable: Optional[bool] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.short_name or self.verbatim or self.url or "unknown"


class PackageRecord(BaseModel):
    """A package in a channel, keyed by its attribute path."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: Literal["package"] = "package"
    attribute_path: str = Field(min_length=1)
    name: str
    version: str = ""
    outputs: Tuple[str, ...] = ("out",)
    default_output: str = "out"
    homepage: Tuple[str, ...] = ()
    description: Optional[str] = None
    long_description: Optional[str] = Field(default=None, alias="longDescription")
    license: Tuple[LicenseInfo, ...] = ()

    @field_validator("version", mode="before")
    @classmethod
    def _version_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("outputs", mode="before")
    @classmethod
    def _outputs_as_set(cls, value: Any) -> Any:
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return tuple(sorted(set(value)))
        return value

    @field_validator("homepage", mode="before")
    @classmethod
    def _homepage_plurality(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            # Keep first-seen order, drop repeats.
            return tuple(dict.fromkeys(value))
        return value

    @field_validator("license", mode="before")
    @classmethod
    def _license_plurality(cls, value: Any) -> Any:
        if value is None:
            return ()
        items = value if isinstance(value, list) else [value]
        normalized = []
        for item in items:
            if isinstance(item, str):
                normalized.append({"verbatim": item})
            else:
                normalized.append(item)
        return tuple(normalized)

    @property
    def identity(self) -> str:
        return self.attribute_path

    @property
    def search_text(self) -> str:
        parts = [self.attribute_path, self.name, self.description or ""]
        return FIELD_SEPARATOR.join(normalize_text(p) for p in parts)


class OptionRecord(BaseModel):
    """A configuration option in a channel, keyed by its dotted path."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: Literal["option"] = "option"
    path: str = Field(min_length=1)
    option_type: str = Field(default="", alias="type")
    default: Optional[str] = None
    description: Optional[str] = None
    example: Optional[str] = None
    declarations: Tuple[str, ...] = ()
    read_only: bool = Field(default=False, alias="readOnly")

    @field_validator("default", "example", mode="before")
    @classmethod
    def _render(cls, value: Any) -> Any:
        return render_value(value)

    @field_validator("option_type", mode="before")
    @classmethod
    def _type_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def identity(self) -> str:
        return self.path

    @property
    def declaration_links(self) -> List[Tuple[str, Optional[str]]]:
        """Each declaration with its link target (None when it is not a URL)."""
        return [(d, declaration_url(d)) for d in self.declarations]

    @property
    def search_text(self) -> str:
        parts = [self.path, self.description or ""]
        return FIELD_SEPARATOR.join(normalize_text(p) for p in parts)


Record = Annotated[Union[PackageRecord, OptionRecord], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Feed loading
# ---------------------------------------------------------------------------

class SkipReason(str, Enum):
    MISSING_IDENTITY = "MissingIdentity"
    MALFORMED_ENTRY = "MalformedEntry"
    DUPLICATE_IDENTITY = "DuplicateIdentity"


@dataclass(frozen=True)
class SkippedEntry:
    document: str
    identity: Optional[str]
    reason: SkipReason
    detail: str = ""


@dataclass(frozen=True)
class FeedRevision:
    """
    Identifies one upstream feed document.

    ``digest`` is the SHA-256 of the raw document; ``etag`` and
    ``last_modified`` are the HTTP validators when the document came over HTTP.
    """

    digest: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass(frozen=True)
class ChannelRevision:
    options: FeedRevision
    packages: FeedRevision

    def same_content(self, other: Optional["ChannelRevision"]) -> bool:
        if other is None:
            return False
        return (
            self.options.digest == other.options.digest
            and self.packages.digest == other.packages.digest
        )


@dataclass(frozen=True)
class LoadResult:
    records: Tuple[Union[PackageRecord, OptionRecord], ...]
    skipped: Tuple[SkippedEntry, ...] = ()

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


# ---------------------------------------------------------------------------
# Channel state and query results
# ---------------------------------------------------------------------------

class RefreshOutcome(str, Enum):
    NEVER = "never"
    SUCCESS = "success"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ChannelStatus(BaseModel):
    """What the channel selector needs to know about one channel."""

    name: str
    ready: bool
    sequence: Optional[int] = None
    record_count: int = 0
    last_refresh_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_outcome: RefreshOutcome = RefreshOutcome.NEVER
    last_error: Optional[str] = None


class SearchPage(BaseModel):
    """A ranked, size-bounded page of search results."""

    channel: str
    query: str
    kind: Optional[RecordKind] = None
    page: int = 1
    limit: int
    total: int = 0
    sequence: Optional[int] = None
    ready: bool = True
    items: List[Record] = Field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total
