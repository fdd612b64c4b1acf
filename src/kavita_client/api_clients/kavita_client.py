"""Kavita API Client.

Typed operations over the Kavita REST API: authentication, library and
series browsing, reader metadata, document pages, progress tracking and
API-key bearing resource URLs for image loaders.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError

from ..remote.credential_store import CredentialStore
from .base_client import DEFAULT_TIMEOUT, KavitaRemoteAPIClient
from .jwt_token_manager import JWTTokenManager, TokenValidationError
from .models import (
    BookChapter,
    BookInfo,
    Chapter,
    ChapterInfo,
    Library,
    MangaFormat,
    ReaderKind,
    Series,
    SeriesDetail,
    SessionCredentials,
    Volume,
)
from .network_error_handler import APIClientError, MalformedResponseError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_ENRICHMENT_CONCURRENCY = 8


def decode_series_listing(payload: Any) -> List[Dict[str, Any]]:
    """Resolve the series listing payload into its list of raw series.

    Kavita answers the listing endpoints in one of two shapes:

    - an envelope object carrying the page under ``result``:
      ``{"result": [{...}, ...], ...}``
    - a bare JSON array of series: ``[{...}, ...]``

    Raises:
        MalformedResponseError: For any other shape
    """
    if isinstance(payload, dict) and "result" in payload:
        result = payload["result"]
        if isinstance(result, list):
            return result
        raise MalformedResponseError(
            f"Series listing 'result' is {type(result).__name__}, expected a list"
        )
    if isinstance(payload, list):
        return payload
    raise MalformedResponseError(
        f"Unexpected series listing shape: {type(payload).__name__}"
    )


def resolve_reader_kind(info: ChapterInfo) -> ReaderKind:
    """Pick the rendering strategy for a chapter.

    The file extension wins over ``series_format`` when the two disagree;
    Kavita's format code is less reliable than the file name.
    """
    file_name = (info.file_name or "").lower()
    if file_name.endswith(".epub"):
        return ReaderKind.EPUB
    if file_name.endswith(".pdf"):
        return ReaderKind.PDF
    if info.series_format == MangaFormat.EPUB and not file_name:
        return ReaderKind.EPUB
    if info.series_format == MangaFormat.PDF and not file_name:
        return ReaderKind.PDF
    return ReaderKind.IMAGE


class KavitaAPIClient(KavitaRemoteAPIClient):
    """Client for one Kavita server."""

    def __init__(
        self,
        server_url: str,
        store: CredentialStore,
        key_prefix: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        enrichment_concurrency: int = DEFAULT_ENRICHMENT_CONCURRENCY,
    ):
        super().__init__(
            server_url,
            store,
            key_prefix=key_prefix,
            timeout=timeout,
            transport=transport,
        )
        self.enrichment_concurrency = max(1, enrichment_concurrency)
        self.jwt_manager = JWTTokenManager()

    @staticmethod
    def _parse(model: Type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Unexpected {model.__name__} payload: {e.error_count()} validation error(s)"
            )

    @classmethod
    def _parse_list(cls, model: Type[ModelT], data: Any) -> List[ModelT]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponseError(
                f"Expected a list of {model.__name__}, got {type(data).__name__}"
            )
        return [cls._parse(model, item) for item in data]

    async def _get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.get(endpoint, params=params)
        return self._decode_json(response)

    async def test_connection(self) -> bool:
        """Call the health endpoint.

        Never raises: any failure, including timeouts, yields False.
        """
        logger.info(f"Testing connection to: {self.server_url}")
        try:
            await self.request("GET", "/api/Health", retry_on_unauthorized=False)
        except APIClientError as e:
            logger.warning(
                f"Connection to {self.server_url} failed ({e.kind.value}): {e}"
            )
            return False
        logger.info(f"Connection to {self.server_url} successful")
        return True

    async def login(self, username: str, password: str) -> SessionCredentials:
        """Authenticate and store all three session secrets.

        Raises:
            AuthenticationError: If the credentials are rejected
            MalformedResponseError: If the answer lacks any session secret
        """
        response = await self.request(
            "POST",
            "/api/Account/login",
            json={"username": username, "password": password},
            retry_on_unauthorized=False,
        )
        user = self._parse(SessionCredentials, self._decode_json(response))
        await self._set_credentials(user.token, user.refresh_token, user.api_key)
        logger.info(f"Logged in to {self.server_url} as {user.username or username}")
        return user

    async def logout(self) -> None:
        await self.clear_credentials()
        logger.info(f"Logged out of {self.server_url}")

    def session_info(self) -> Dict[str, Any]:
        """Describe the in-memory session.

        ``username`` and ``expires_at`` come from the access token's claims and
        are None when the token is absent or is not a JWT.
        """
        info: Dict[str, Any] = {
            "server_url": self.server_url,
            "authenticated": bool(self._token),
            "username": None,
            "expires_at": None,
            "expired": None,
        }
        if not self._token:
            return info
        try:
            info["username"] = self.jwt_manager.get_token_username(self._token)
            info["expires_at"] = self.jwt_manager.get_token_expiry_time(self._token)
            info["expired"] = self.jwt_manager.is_token_expired(self._token)
        except TokenValidationError as e:
            logger.debug(f"Access token is not an inspectable JWT: {e}")
        return info

    async def list_libraries(self) -> List[Library]:
        return self._parse_list(Library, await self._get_json("/api/Library/libraries"))

    async def list_series(
        self, library_id: int, page_number: int = 0, page_size: int = 50
    ) -> List[Series]:
        """List one page of series in a library, enriched with volume counts.

        The primary listing endpoint is tried first. If it fails or answers in
        an unrecognized shape, the alternate endpoint is tried once; when that
        fails too, the primary endpoint's error is raised.

        Args:
            library_id: Library to list
            page_number: Zero-based page index
            page_size: Series per page

        Returns:
            Series in server order. Series whose enrichment failed have
            ``volume_count``/``chapter_count`` left as None.
        """
        try:
            response = await self.post(
                "/api/Series/all-v2",
                json={
                    "libraryId": library_id,
                    "pageNumber": page_number,
                    "pageSize": page_size,
                },
            )
            raw_series = decode_series_listing(self._decode_json(response))
            series_list = self._parse_list(Series, raw_series)
        except APIClientError as primary_error:
            logger.warning(
                f"all-v2 failed for library {library_id} ({primary_error}), "
                "trying alternative endpoint"
            )
            try:
                payload = await self._get_json(
                    "/api/Series/series",
                    params={
                        "libraryId": library_id,
                        "pageNumber": page_number,
                        "pageSize": page_size,
                    },
                )
                return self._parse_list(Series, decode_series_listing(payload))
            except APIClientError as fallback_error:
                logger.debug(f"Alternative series endpoint failed: {fallback_error}")
                raise primary_error

        return await self._enrich_series(series_list)

    async def _enrich_series(self, series_list: List[Series]) -> List[Series]:
        """Attach volume and chapter counts, one volumes request per series.

        Runs concurrently up to ``enrichment_concurrency`` requests at a time.
        """
        semaphore = asyncio.Semaphore(self.enrichment_concurrency)

        async def enrich(series: Series) -> Series:
            async with semaphore:
                try:
                    volumes = await self.list_volumes(series.id)
                except APIClientError as e:
                    logger.warning(f"Failed to get volumes for series {series.id}: {e}")
                    return series

            return series.model_copy(
                update={
                    "volume_count": len(volumes),
                    "chapter_count": sum(len(v.chapters) for v in volumes),
                }
            )

        return list(await asyncio.gather(*(enrich(s) for s in series_list)))

    async def get_series(self, series_id: int) -> SeriesDetail:
        return self._parse(SeriesDetail, await self._get_json(f"/api/Series/{series_id}"))

    async def list_volumes(self, series_id: int) -> List[Volume]:
        payload = await self._get_json("/api/Series/volumes", params={"seriesId": series_id})
        return self._parse_list(Volume, payload)

    async def list_chapters(self, volume_id: int) -> List[Chapter]:
        """List the chapters of a volume."""
        payload = await self._get_json("/api/Series/chapter", params={"volumeId": volume_id})
        return self._parse_list(Chapter, payload)

    async def get_chapter_info(self, chapter_id: int) -> ChapterInfo:
        """Reader metadata, including the file name and format code."""
        payload = await self._get_json(
            "/api/Reader/chapter-info", params={"chapterId": chapter_id}
        )
        return self._parse(ChapterInfo, payload)

    async def get_book_info(self, chapter_id: int) -> BookInfo:
        return self._parse(BookInfo, await self._get_json(f"/api/Book/{chapter_id}/book-info"))

    async def get_book_page(self, chapter_id: int, page: int) -> str:
        """Fetch one page of a document chapter as raw HTML."""
        response = await self.get(f"/api/Book/{chapter_id}/book-page", params={"page": page})
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            # Some releases wrap the page HTML in a JSON string
            data = self._decode_json(response)
            if isinstance(data, str):
                return data
            raise MalformedResponseError(
                f"Unexpected book page payload: {type(data).__name__}"
            )
        return response.text

    async def get_book_chapters(self, chapter_id: int) -> List[BookChapter]:
        """Table of contents of a document chapter."""
        return self._parse_list(
            BookChapter, await self._get_json(f"/api/Book/{chapter_id}/chapters")
        )

    async def warm_cache(self, chapter_id: int) -> None:
        """Ask the server to prepare a chapter before it is opened.

        Best effort, never raises. Documents (EPUB) are prepared through a
        metadata fetch, image formats through a first page fetch. PDFs are
        skipped: the server extracts their pages on demand and a pre-fetch
        only risks a timeout.
        """
        try:
            info = await self.get_chapter_info(chapter_id)
            kind = resolve_reader_kind(info)
            logger.debug(
                f"Chapter {chapter_id}: format={info.series_format} "
                f"file={info.file_name!r} reader={kind.value}"
            )

            if kind is ReaderKind.EPUB:
                await self.get(f"/api/Book/{chapter_id}/book-info")
            elif kind is ReaderKind.PDF:
                logger.debug(f"Chapter {chapter_id} is a PDF, no pre-cache needed")
            else:
                params: Dict[str, Any] = {"chapterId": chapter_id, "page": 0}
                if self.api_key:
                    params["apiKey"] = self.api_key
                await self.get("/api/Reader/image", params=params)
        except APIClientError as e:
            logger.info(f"Cache warm-up failed for chapter {chapter_id}: {e}")

    async def record_progress(
        self, series_id: int, volume_id: int, chapter_id: int, page_num: int
    ) -> bool:
        """Save reading progress.

        Failures are logged, never raised.

        Returns:
            True if the server accepted the progress, False otherwise
        """
        try:
            await self.post(
                "/api/Reader/progress",
                json={
                    "seriesId": series_id,
                    "volumeId": volume_id,
                    "chapterId": chapter_id,
                    "pageNum": page_num,
                },
            )
        except APIClientError as e:
            logger.error(f"Failed to save progress for chapter {chapter_id}: {e}")
            return False
        return True

    def _resource_url(self, endpoint: str, params: Dict[str, Any]) -> str:
        query = dict(params)
        if self.api_key:
            query["apiKey"] = self.api_key
        return f"{self.server_url}{endpoint}?{urlencode(query)}"

    def cover_url(self, series_id: int) -> str:
        return self._resource_url("/api/Image/series-cover", {"seriesId": series_id})

    def volume_cover_url(self, volume_id: int) -> str:
        return self._resource_url("/api/Image/volume-cover", {"volumeId": volume_id})

    def chapter_cover_url(self, chapter_id: int) -> str:
        return self._resource_url("/api/Image/chapter-cover", {"chapterId": chapter_id})

    def page_image_url(self, chapter_id: int, page: int, extract_pdf: bool = False) -> str:
        """URL of one page image; ``extract_pdf`` asks the server to render PDF pages."""
        params: Dict[str, Any] = {"chapterId": chapter_id, "page": page}
        if extract_pdf:
            params["extractPdf"] = "true"
        return self._resource_url("/api/Reader/image", params)
