import asyncio
from logging import Logger
from pathlib import Path

from fastmcp.utilities.logging import get_logger

from repo_relay_mcp.clients.errors.github import ClientError
from repo_relay_mcp.clients.github import DEFAULT_COMMIT_MESSAGE, RepositoryHostClient
from repo_relay_mcp.clients.models.github import FileSyncOutcome, RemoteFile, Repository, SyncResult


class SyncError(Exception):
    """A working directory could not be synchronized to a repository."""


class SyncPreconditionError(SyncError):
    """There is nothing to synchronize, or no way to reach the repository host."""

    def __init__(self, message: str):
        super().__init__(message)


class RepositoryUnavailableError(SyncError):
    """The destination repository could neither be created nor fetched."""

    def __init__(self, repo_name: str, reason: str):
        super().__init__(f"Repository {repo_name} is unavailable: {reason}")
        self.repo_name: str = repo_name


def list_working_files(working_dir: Path) -> list[Path]:
    """Every regular file below `working_dir`, sorted by path."""

    return sorted(path for path in working_dir.rglob("*") if path.is_file())


def to_remote_path(working_dir: Path, file_path: Path) -> str:
    return file_path.relative_to(working_dir).as_posix()


class SyncPipeline:
    """Reconciles a local file tree with the files stored in a remote repository.

    Files are written one after another; writes to the same branch through the contents API conflict when they
    overlap. A file that fails to upload is recorded in the result and does not stop the rest of the run.
    """

    def __init__(
        self,
        host_client: RepositoryHostClient,
        commit_message: str = DEFAULT_COMMIT_MESSAGE,
        private: bool = True,
        logger: Logger | None = None,
    ):
        self.host_client: RepositoryHostClient = host_client
        self.commit_message: str = commit_message
        self.private: bool = private
        self.logger: Logger = logger or get_logger(name=__name__)

    async def synchronize(self, working_dir: Path, repo_name: str) -> SyncResult:
        """Push every file under `working_dir` to the repository `repo_name`, creating the repository if needed.

        Raises:
            SyncPreconditionError: If `working_dir` is not a directory. Raised before any request is made.
            RepositoryUnavailableError: If the repository can neither be created nor fetched.
        """

        if not await asyncio.to_thread(working_dir.is_dir):
            msg = f"{working_dir} is not a directory"
            raise SyncPreconditionError(msg)

        repository: Repository = await self._resolve_repository(repo_name=repo_name)

        file_paths: list[Path] = await asyncio.to_thread(list_working_files, working_dir)

        self.logger.info(f"Synchronizing {len(file_paths)} files from {working_dir} to {repository.owner}/{repository.name}")

        outcomes: list[FileSyncOutcome] = [
            await self._synchronize_file(repository=repository, remote_path=to_remote_path(working_dir, file_path), file_path=file_path)
            for file_path in file_paths
        ]

        result = SyncResult(repository=repository, outcomes=outcomes)

        if result.failed:
            self.logger.warning(f"{len(result.failed)} of {len(outcomes)} files failed to upload to {repository.html_url}")

        return result

    async def _resolve_repository(self, repo_name: str) -> Repository:
        try:
            repository, created = await self.host_client.get_or_create_repository(name=repo_name, private=self.private)
        except ClientError as e:
            self.logger.exception(f"Could not create or fetch repository {repo_name}")
            raise RepositoryUnavailableError(repo_name=repo_name, reason=str(e)) from e

        self.logger.info(f"{'Created' if created else 'Using existing'} repository {repository.html_url}")

        return repository

    async def _synchronize_file(self, repository: Repository, remote_path: str, file_path: Path) -> FileSyncOutcome:
        try:
            content: bytes = await asyncio.to_thread(file_path.read_bytes)

            sha: str | None = await self.host_client.get_file_sha(owner=repository.owner, repo=repository.name, path=remote_path)

            _ = await self.host_client.create_or_update_file(
                owner=repository.owner,
                repo=repository.name,
                remote_file=RemoteFile(path=remote_path, content=content, sha=sha),
                message=self.commit_message,
            )
        except (ClientError, OSError) as e:
            self.logger.exception(f"Failed to upload {remote_path} to {repository.html_url}")
            return FileSyncOutcome(path=remote_path, action="failed", error=str(e))

        return FileSyncOutcome(path=remote_path, action="updated" if sha else "created")
