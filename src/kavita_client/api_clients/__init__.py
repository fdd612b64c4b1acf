"""API Client Abstractions for Kavita Remote Operations.

Provides clean HTTP client abstractions with no raw HTTP calls in business logic.
All HTTP functionality is contained within dedicated API client classes.
"""

from .base_client import KavitaRemoteAPIClient, RequestState
from .jwt_token_manager import JWTTokenManager, TokenValidationError
from .kavita_client import KavitaAPIClient, decode_series_listing, resolve_reader_kind
from .models import (
    BookChapter,
    BookInfo,
    Chapter,
    ChapterInfo,
    Library,
    LibraryType,
    MangaFormat,
    ReaderKind,
    Series,
    SeriesDetail,
    SeriesMatch,
    ServerKind,
    ServerRegistration,
    SessionCredentials,
    Volume,
)
from .network_error_handler import (
    APIClientError,
    AuthenticationError,
    DNSResolutionError,
    ErrorKind,
    ForbiddenError,
    MalformedResponseError,
    NetworkConnectionError,
    NetworkError,
    NetworkTimeoutError,
    NoRefreshTokenError,
    NotFoundError,
    ServerError,
    SSLCertificateError,
    UserGuidance,
    UserGuidanceProvider,
)

__all__ = [
    # Clients
    "KavitaRemoteAPIClient",
    "KavitaAPIClient",
    "RequestState",
    "decode_series_listing",
    "resolve_reader_kind",
    # JWT inspection
    "JWTTokenManager",
    "TokenValidationError",
    # Models
    "BookChapter",
    "BookInfo",
    "Chapter",
    "ChapterInfo",
    "Library",
    "LibraryType",
    "MangaFormat",
    "ReaderKind",
    "Series",
    "SeriesDetail",
    "SeriesMatch",
    "ServerKind",
    "ServerRegistration",
    "SessionCredentials",
    "Volume",
    # Errors
    "APIClientError",
    "AuthenticationError",
    "DNSResolutionError",
    "ErrorKind",
    "ForbiddenError",
    "MalformedResponseError",
    "NetworkConnectionError",
    "NetworkError",
    "NetworkTimeoutError",
    "NoRefreshTokenError",
    "NotFoundError",
    "SSLCertificateError",
    "ServerError",
    "UserGuidance",
    "UserGuidanceProvider",
]
