"""Pydantic models for Kavita API payloads and local registrations.

Kavita serializes camelCase JSON. Every wire model accepts the camelCase
aliases as well as the snake_case field names and keeps unknown fields, so
newer server releases that add properties do not break parsing.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MangaFormat(IntEnum):
    """Kavita's numeric series format codes."""

    UNKNOWN = 0
    ARCHIVE = 1
    EPUB = 2
    PDF = 3
    IMAGE = 4


class LibraryType(IntEnum):
    MANGA = 0
    COMIC = 1
    BOOK = 2


class ReaderKind(str, Enum):
    """Rendering strategy a caller should use for a chapter."""

    IMAGE = "image"
    PDF = "pdf"
    EPUB = "epub"


class ServerKind(str, Enum):
    """Protocol spoken by a registered server."""

    KAVITA = "kavita"
    OPDS = "opds"


class KavitaModel(BaseModel):
    """Base for models parsed from Kavita responses."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


def _number_as_text(v):
    # Kavita has sent chapter/volume numbers both as strings and as numbers
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


class SessionCredentials(KavitaModel):
    """Authenticated identity returned by the login endpoint."""

    username: str = Field(default="", description="Account name")
    email: Optional[str] = Field(None, description="Account e-mail")
    token: str = Field(..., description="Bearer access token")
    refresh_token: str = Field(..., description="Token used to mint new access tokens")
    api_key: str = Field(..., description="Long-lived key for resource URLs")
    roles: List[str] = Field(default_factory=list, description="Account roles")

    @field_validator("token", "refresh_token", "api_key")
    @classmethod
    def secrets_must_be_present(cls, v):
        if not v:
            raise ValueError("Session secrets must be non-empty")
        return v


class Library(KavitaModel):
    """A top-level grouping of series on the server."""

    id: int
    name: str = ""
    type: Optional[int] = None
    last_scanned: Optional[str] = None
    folders: List[str] = Field(default_factory=list)


class Series(KavitaModel):
    """A series within a library.

    ``volume_count`` and ``chapter_count`` are not part of the listing payload;
    they are filled in by listing enrichment and stay ``None`` when enrichment
    was not possible.
    """

    id: int
    name: str = ""
    original_name: Optional[str] = None
    localized_name: Optional[str] = None
    sort_name: Optional[str] = None
    library_id: Optional[int] = None
    pages: int = 0
    pages_read: int = 0
    format: Optional[int] = None
    volume_count: Optional[int] = None
    chapter_count: Optional[int] = None


class SeriesDetail(Series):
    """Full series record returned by the series detail endpoint."""

    summary: Optional[str] = None
    cover_image_locked: bool = False
    created: Optional[str] = None
    last_modified: Optional[str] = None


class Chapter(KavitaModel):
    """A readable unit within a volume; progress is tracked against it."""

    id: int
    range: Optional[str] = None
    number: Optional[str] = None
    title: Optional[str] = None
    pages: int = 0
    pages_read: int = 0
    volume_id: Optional[int] = None
    is_special: bool = False

    @field_validator("range", "number", mode="before")
    @classmethod
    def numbers_as_text(cls, v):
        return _number_as_text(v)


class Volume(KavitaModel):
    """A grouping of chapters within a series."""

    id: int
    name: Optional[str] = None
    number: Optional[float] = None
    series_id: Optional[int] = None
    pages: int = 0
    pages_read: int = 0
    chapters: List[Chapter] = Field(default_factory=list)

    @field_validator("chapters", mode="before")
    @classmethod
    def null_chapters_as_empty(cls, v):
        return [] if v is None else v


class ChapterInfo(KavitaModel):
    """Reader metadata for a chapter, used to pick a rendering strategy."""

    chapter_number: Optional[str] = None
    volume_number: Optional[str] = None
    volume_id: Optional[int] = None
    series_id: Optional[int] = None
    series_name: Optional[str] = None
    series_format: Optional[int] = None
    library_id: Optional[int] = None
    library_type: Optional[int] = None
    chapter_title: Optional[str] = None
    file_name: Optional[str] = None
    pages: int = 0
    is_special: bool = False

    @field_validator("chapter_number", "volume_number", mode="before")
    @classmethod
    def numbers_as_text(cls, v):
        return _number_as_text(v)


class BookInfo(KavitaModel):
    """Metadata for a paginated document chapter (EPUB)."""

    book_title: Optional[str] = None
    series_id: Optional[int] = None
    volume_id: Optional[int] = None
    series_format: Optional[int] = None
    series_name: Optional[str] = None
    chapter_number: Optional[str] = None
    volume_number: Optional[str] = None
    library_id: Optional[int] = None
    pages: int = 0
    is_special: bool = False

    @field_validator("chapter_number", "volume_number", mode="before")
    @classmethod
    def numbers_as_text(cls, v):
        return _number_as_text(v)


class BookChapter(KavitaModel):
    """Table of contents entry inside a document."""

    title: str = ""
    part: Optional[str] = None
    page: int = 0
    children: List["BookChapter"] = Field(default_factory=list)


class SeriesMatch(Series):
    """A series found by a cross-server search, tagged with where it lives."""

    server_id: str
    server_name: str
    server_url: str
    library_name: str = ""


class ServerRegistration(BaseModel):
    """A configured remote server."""

    id: str = Field(..., description="Opaque id assigned at registration")
    name: str = Field(..., description="Display label")
    base_url: str = Field(..., description="Normalized URL without trailing slash")
    kind: ServerKind = Field(default=ServerKind.KAVITA, description="Server protocol")
    is_primary: bool = Field(
        default=False, description="Primary hint at creation time"
    )
    last_sync: Optional[datetime] = Field(None, description="Last successful sync")
