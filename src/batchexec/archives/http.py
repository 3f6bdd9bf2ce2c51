"""Archive source backed by a code host's raw-content HTTP API."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from batchexec.archives.base import ArchiveSource
from batchexec.errors import FetchError
from batchexec.models import Repository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "batchexec/0.1"


class HttpArchiveSource(ArchiveSource):
    """Fetches ``{endpoint}/{repo}@{revision}/-/raw/{path}`` archives."""

    def __init__(
        self,
        endpoint: str,
        *,
        access_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        if access_token:
            headers["Authorization"] = f"token {access_token}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self) -> HttpArchiveSource:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def raw_url(self, repository: Repository, path: str) -> str:
        revision = quote(repository.revision, safe="")
        raw_path = quote(path.strip("/"))
        return f"{self.endpoint}/{repository.name}@{revision}/-/raw/{raw_path}"

    async def _get(self, repository: Repository, path: str, accept: str) -> httpx.Response:
        url = self.raw_url(repository, path)
        try:
            return await self._client.get(url, headers={"Accept": accept})
        except httpx.TimeoutException as exc:
            raise FetchError(
                f"Timed out fetching {url}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(
                f"Fetching {url} failed: {exc}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
            ) from exc

    async def fetch_archive(self, repository: Repository, path: str) -> bytes:
        response = await self._get(repository, path, "application/zip")
        if response.status_code == 404:
            raise FetchError(
                f"Archive not found for {repository.name}@{repository.revision} path {path!r}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
                not_found=True,
            )
        if response.status_code >= 400:
            raise FetchError(
                f"Fetching archive of {repository.name} failed with HTTP "
                f"{response.status_code}: {response.text[:200]}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
            )
        logger.debug(
            "Fetched archive of %s@%s path %r (%d bytes)",
            repository.name,
            repository.revision,
            path,
            len(response.content),
        )
        return response.content

    async def fetch_file(self, repository: Repository, path: str) -> bytes | None:
        response = await self._get(repository, path, "*/*")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise FetchError(
                f"Fetching {path} from {repository.name} failed with HTTP "
                f"{response.status_code}",
                repository=repository.name,
                revision=repository.revision,
                path=path,
            )
        return response.content
