import asyncio
import io
import shutil
import zipfile
import zlib
from logging import Logger
from pathlib import Path

from anyio import mkdtemp
from fastmcp.utilities.logging import get_logger

from repo_relay_mcp.sessions.models import PendingArchive, UserId
from repo_relay_mcp.sessions.store import SessionStore
from repo_relay_mcp.settings import DEFAULT_ARCHIVE_MAX_BYTES

SCRATCH_PREFIX = "repo_relay_"
EXTRACTED_DIRECTORY = "extracted"

# general purpose bit 0 of a zip member header
ENCRYPTED_FLAG = 0x1


class IntakeError(Exception):
    """An uploaded archive could not be accepted."""


class CorruptArchiveError(IntakeError):
    """The upload is not a well-formed ZIP archive."""

    def __init__(self, reason: str):
        super().__init__(f"The archive is corrupt: {reason}")
        self.reason: str = reason


class ArchiveTooLargeError(IntakeError):
    """The upload, compressed or extracted, is larger than the relay accepts."""

    def __init__(self, size: int, max_bytes: int):
        super().__init__(f"The archive is {size} bytes, the limit is {max_bytes} bytes")
        self.size: int = size
        self.max_bytes: int = max_bytes


class ArchiveExtractionError(IntakeError):
    """A valid archive could not be written to disk."""

    def __init__(self, reason: str):
        super().__init__(f"The archive could not be extracted: {reason}")
        self.reason: str = reason


def validate_archive(zip_file: zipfile.ZipFile, destination: Path, max_bytes: int) -> None:
    """Check the declared extracted size, that no member escapes `destination` or is encrypted, then every checksum.

    Nothing is decompressed until the declared sizes and paths have been accepted.
    """

    members = zip_file.infolist()

    if (extracted_size := sum(member.file_size for member in members)) > max_bytes:
        raise ArchiveTooLargeError(size=extracted_size, max_bytes=max_bytes)

    for member in members:
        if not (destination / member.filename).resolve().is_relative_to(destination):
            raise CorruptArchiveError(reason=f"{member.filename} would be extracted outside of the archive directory")

        if member.flag_bits & ENCRYPTED_FLAG:
            raise CorruptArchiveError(reason=f"{member.filename} is encrypted")

    try:
        if (bad_member := zip_file.testzip()) is not None:
            raise CorruptArchiveError(reason=f"bad checksum for {bad_member}")
    except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError) as e:
        raise CorruptArchiveError(reason=str(e)) from e


def extract_archive(archive_bytes: bytes, destination: Path, max_bytes: int = DEFAULT_ARCHIVE_MAX_BYTES) -> int:
    """Validate and extract a ZIP archive into `destination`, which must not exist yet.

    Returns:
        The number of regular files extracted.
    """

    if len(archive_bytes) > max_bytes:
        raise ArchiveTooLargeError(size=len(archive_bytes), max_bytes=max_bytes)

    try:
        zip_file = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
        raise CorruptArchiveError(reason=str(e)) from e

    destination.mkdir(parents=True)
    destination = destination.resolve()

    with zip_file:
        validate_archive(zip_file=zip_file, destination=destination, max_bytes=max_bytes)

        try:
            zip_file.extractall(path=destination)
        except OSError as e:
            raise ArchiveExtractionError(reason=e.strerror or type(e).__name__) from e

    return sum(1 for path in destination.rglob("*") if path.is_file())


class ArchiveIntake:
    """Accepts uploaded archives and registers their extracted contents as the user's pending archive."""

    def __init__(
        self,
        session_store: SessionStore,
        scratch_dir: Path | None = None,
        max_bytes: int = DEFAULT_ARCHIVE_MAX_BYTES,
        logger: Logger | None = None,
    ):
        self.session_store: SessionStore = session_store
        self.scratch_dir: Path | None = scratch_dir
        self.max_bytes: int = max_bytes
        self.logger: Logger = logger or get_logger(name=__name__)

    async def ingest(self, user_id: UserId, archive_bytes: bytes, filename: str | None = None) -> PendingArchive:
        """Extract an archive into a fresh directory and make it the user's pending archive.

        The directory that held the user's previous pending archive is deleted. When the archive is rejected nothing
        is left on disk and the user's pending archive is unchanged.

        Raises:
            CorruptArchiveError: If the archive is malformed.
            ArchiveTooLargeError: If the archive is larger than `max_bytes`.
            ArchiveExtractionError: If the extracted files could not be written.
        """

        if self.scratch_dir is not None:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)

        scratch_root = Path(await mkdtemp(prefix=SCRATCH_PREFIX, dir=str(self.scratch_dir) if self.scratch_dir else None))
        directory = scratch_root / EXTRACTED_DIRECTORY

        self.logger.info(f"Extracting {len(archive_bytes)} byte archive {filename or ''} for user {user_id} into {directory}")

        extracted = False
        try:
            file_count = await asyncio.to_thread(extract_archive, archive_bytes, directory, self.max_bytes)
            extracted = True
        finally:
            if not extracted:
                shutil.rmtree(scratch_root, ignore_errors=True)

        archive = PendingArchive(directory=directory.resolve(), scratch_root=scratch_root, filename=filename, file_count=file_count)

        await self.session_store.set_pending_archive(user_id=user_id, archive=archive)

        self.logger.info(f"Registered {file_count} extracted files as the pending archive for user {user_id}")

        return archive
