from logging import Logger

import httpx
from fastmcp.utilities.logging import get_logger

from repo_relay_mcp.clients.errors.messaging import DownloadError, DownloadTooLargeError
from repo_relay_mcp.settings import DEFAULT_ARCHIVE_MAX_BYTES, DEFAULT_DOWNLOAD_TIMEOUT_SECONDS, DEFAULT_MESSAGING_FILE_URL


class MessagingFileClient:
    """Downloads files users sent through the messaging service."""

    def __init__(
        self,
        token: str,
        file_url: str = DEFAULT_MESSAGING_FILE_URL,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        max_bytes: int = DEFAULT_ARCHIVE_MAX_BYTES,
        http_client: httpx.AsyncClient | None = None,
        logger: Logger | None = None,
    ):
        self.file_url: str = file_url.rstrip("/")
        self.max_bytes: int = max_bytes
        self.logger: Logger = logger or get_logger(name=__name__)

        self._token: str = token
        self._http_client: httpx.AsyncClient = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def download_url(self, file_path: str) -> str:
        return f"{self.file_url}/bot{self._token}/{file_path.lstrip('/')}"

    async def download(self, file_path: str) -> bytes:
        """Download a file by the path the messaging service assigned to it.

        Raises:
            DownloadTooLargeError: If the file is larger than `max_bytes`.
            DownloadError: If the request fails or times out.
        """

        self.logger.info(f"Downloading {file_path} from the messaging service")

        chunks: list[bytes] = []
        received = 0

        try:
            async with self._http_client.stream("GET", self.download_url(file_path)) as response:
                _ = response.raise_for_status()

                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise DownloadTooLargeError(file_path=file_path, max_bytes=self.max_bytes)
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise DownloadError(file_path=file_path, message="the download timed out") from e
        except httpx.HTTPStatusError as e:
            raise DownloadError(file_path=file_path, message=f"the messaging service answered {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DownloadError(file_path=file_path, message=type(e).__name__) from e

        self.logger.info(f"Downloaded {received} bytes for {file_path}")

        return b"".join(chunks)

    async def aclose(self) -> None:
        await self._http_client.aclose()
