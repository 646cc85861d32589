from collections.abc import Awaitable, Callable, Sequence
from logging import Logger, getLogger
from typing import Any, Literal, TypeVar, overload

from githubkit import GitHub as GitHubKit
from githubkit.auth.token import TokenAuthStrategy
from githubkit.exception import GitHubException as GitHubKitGitHubException
from githubkit.exception import RequestFailed as GitHubKitRequestFailed
from githubkit.response import Response
from githubkit.response import Response as GitHubKitResponse
from githubkit.retry import RetryChainDecision, RetryRateLimit, RetryServerError
from githubkit.versions.v2022_11_28.models import ContentFile as GitHubKitContentFile
from pydantic import BaseModel

from repo_relay_mcp.clients.errors.github import RequestError, ResourceConflictError, ResourceNotFoundError, ResourceTypeMismatchError
from repo_relay_mcp.clients.models.github import RemoteFile, Repository
from repo_relay_mcp.settings import DEFAULT_GITHUB_TIMEOUT_SECONDS

NOT_FOUND_ERROR = 404
CONFLICT_ERRORS = {409, 422}

GITHUBKIT_RESPONSE_TYPE = BaseModel | Sequence[BaseModel]

T = TypeVar("T", bound=GITHUBKIT_RESPONSE_TYPE)

DEFAULT_COMMIT_MESSAGE = "Upload via repo relay"


def extract_response(response: Response[T], /) -> T:
    """Extract the response from a response."""

    return response.parsed_data


def get_githubkit_client(token: str, timeout: float = DEFAULT_GITHUB_TIMEOUT_SECONDS) -> GitHubKit[Any]:
    # Retry server errors up to 3 times
    retry_server_error = RetryServerError()

    # Retry rate limit errors up to 3 times
    retry_rate_limit = RetryRateLimit(max_retry=3)

    retry_chain = RetryChainDecision(
        retry_server_error,
        retry_rate_limit,
    )

    return GitHubKit[TokenAuthStrategy](auth=TokenAuthStrategy(token=token), auto_retry=retry_chain, timeout=timeout)


class RepositoryHostClient:
    """The repository hosting operations the sync pipeline needs, on top of githubkit."""

    githubkit_client: GitHubKit[Any]
    logger: Logger

    log_requests: bool
    log_responses: bool
    log_on_error: bool

    def __init__(
        self,
        githubkit_client: GitHubKit[Any],
        logger: Logger | None = None,
        log_requests: bool = True,
        log_responses: bool = False,
        log_on_error: bool = True,
    ):
        self.githubkit_client = githubkit_client
        self.logger = logger or getLogger(__name__)
        self.log_requests = log_requests
        self.log_responses = log_responses
        self.log_on_error = log_on_error

        self._login: str | None = None

    @classmethod
    def from_token(cls, token: str, timeout: float = DEFAULT_GITHUB_TIMEOUT_SECONDS, logger: Logger | None = None) -> "RepositoryHostClient":
        return cls(githubkit_client=get_githubkit_client(token=token, timeout=timeout), logger=logger)

    def _get_loggers(
        self, log_request: bool | None = None, log_response: bool | None = None, log_on_error: bool | None = None
    ) -> tuple[Callable[[str], Any], Callable[[str], Any], Callable[[BaseException | str], Any]]:
        request_logger = self.logger.info if log_request or self.log_requests else self.logger.debug
        response_logger = self.logger.info if log_response or self.log_responses else self.logger.debug
        error_logger = self.logger.exception if log_on_error or self.log_on_error else self.logger.debug
        return request_logger, response_logger, error_logger

    @overload
    async def _perform_rest_request(
        self,
        action: str,
        log_request: bool | None = None,
        log_response: bool | None = None,
        log_on_error: bool | None = None,
        error_on_not_found: Literal[False] = False,
        *,
        method: Callable[..., Awaitable[GitHubKitResponse[T]]],
        **request_args: Any,  # pyright: ignore[reportAny]
    ) -> T | None: ...

    @overload
    async def _perform_rest_request(
        self,
        action: str,
        log_request: bool | None = None,
        log_response: bool | None = None,
        log_on_error: bool | None = None,
        error_on_not_found: Literal[True] = True,
        *,
        method: Callable[..., Awaitable[GitHubKitResponse[T]]],
        **request_args: Any,  # pyright: ignore[reportAny]
    ) -> T: ...

    async def _perform_rest_request(
        self,
        action: str,
        log_request: bool | None = None,
        log_response: bool | None = None,
        log_on_error: bool | None = None,
        error_on_not_found: bool | None = None,
        *,
        method: Callable[..., Awaitable[GitHubKitResponse[T]]],
        **request_args: Any,  # pyright: ignore[reportAny]
    ) -> T | None:
        """Perform a request and extract the response.

        Args:
            action: The action being performed.
            log_request: Whether to log the request.
            log_response: Whether to log the response.
            log_on_error: Whether to log on error.
            error_on_not_found: Whether to raise an error if the resource is not found.

        Raises:
            ResourceNotFoundError: If the resource is not found and error_on_not_found is True.
            ResourceConflictError: If the resource already exists or conflicts with the current state.
            RequestError: If the request fails.
        """

        request_logger, response_logger, error_logger = self._get_loggers(
            log_request=log_request, log_response=log_response, log_on_error=log_on_error
        )

        loggable_args = {key: value for key, value in request_args.items() if key != "content"}

        request_logger(f"Performing {action} using {method.__name__} with kwargs {loggable_args}")

        try:
            response: GitHubKitResponse[T] = await method(**request_args)
        except GitHubKitRequestFailed as e:
            if e.response.status_code == NOT_FOUND_ERROR:
                if error_on_not_found:
                    raise ResourceNotFoundError(action=action, resource=e.request.url.path) from e

                return None

            if e.response.status_code in CONFLICT_ERRORS:
                raise ResourceConflictError(action=action, resource=e.request.url.path, extra_info={"details": str(e)}) from e

            error_logger(f"RequestFailed error performing {action} using {method.__name__} with kwargs {loggable_args}: {e}")

            raise RequestError(action=action, message=str(e)) from e
        except GitHubKitGitHubException as e:
            error_logger(f"Error performing {action} using {method.__name__} with kwargs {loggable_args}: {e}")

            raise RequestError(action=action, message=str(e)) from e

        extracted_response = extract_response(response)

        response_logger(f"Extracted response for {action} using {method.__name__} with kwargs {loggable_args}: {extracted_response}")

        return extracted_response

    async def get_authenticated_login(self) -> str:
        """Get the login of the user the hosting credential belongs to."""

        if self._login is None:
            user = await self._perform_rest_request(
                action="Get authenticated user",
                error_on_not_found=True,
                method=self.githubkit_client.rest.users.async_get_authenticated,
            )
            self._login = user.login

        return self._login

    async def create_repository(self, name: str, private: bool = True) -> Repository:
        """Create a repository for the authenticated user.

        Raises:
            ResourceConflictError: If the repository already exists.
        """

        githubkit_repository = await self._perform_rest_request(
            action="Create repository",
            error_on_not_found=True,
            method=self.githubkit_client.rest.repos.async_create_for_authenticated_user,
            name=name,
            private=private,
        )

        return Repository.from_full_repository(full_repository=githubkit_repository)

    @overload
    async def get_repository(self, owner: str, repo: str, error_on_not_found: Literal[True] = True) -> Repository: ...

    @overload
    async def get_repository(self, owner: str, repo: str, error_on_not_found: Literal[False] = False) -> Repository | None: ...

    async def get_repository(
        self,
        owner: str,
        repo: str,
        error_on_not_found: bool = False,
    ) -> Repository | None:
        """Get a repository."""

        if githubkit_repository := await self._perform_rest_request(
            action="Get repository",
            log_request=True,
            error_on_not_found=error_on_not_found,
            method=self.githubkit_client.rest.repos.async_get,
            owner=owner,
            repo=repo,
        ):
            return Repository.from_full_repository(full_repository=githubkit_repository)

        return None

    async def get_or_create_repository(self, name: str, private: bool = True) -> tuple[Repository, bool]:
        """Create the repository, or fetch it if the authenticated user already has one with that name.

        Returns:
            The repository and whether it was created by this call.
        """

        try:
            return await self.create_repository(name=name, private=private), True
        except ResourceConflictError:
            self.logger.info(f"Repository {name} already exists, fetching it instead")

        owner: str = await self.get_authenticated_login()

        return await self.get_repository(owner=owner, repo=name, error_on_not_found=True), False

    async def get_file_sha(self, owner: str, repo: str, path: str) -> str | None:
        """Get the blob hash of a file in the repository, or None when the file does not exist."""

        content = await self._perform_rest_request(
            action="Get file",
            log_request=False,
            error_on_not_found=False,
            method=self.githubkit_client.rest.repos.async_get_content,
            owner=owner,
            repo=repo,
            path=path,
        )

        if content is None:
            return None

        if not isinstance(content, GitHubKitContentFile):
            raise ResourceTypeMismatchError(action="Get file", resource=path, expected_type=GitHubKitContentFile, actual_type=type(content))

        return content.sha

    async def create_or_update_file(
        self, owner: str, repo: str, remote_file: RemoteFile, message: str = DEFAULT_COMMIT_MESSAGE
    ) -> RemoteFile:
        """Write a file to the repository. The file's `sha` marks the write as an update of that blob.

        Returns:
            The file with the hash of the newly written blob.
        """

        request_args: dict[str, Any] = {
            "owner": owner,
            "repo": repo,
            "path": remote_file.path,
            "message": message,
            "content": remote_file.encoded_content,
        }

        if remote_file.sha is not None:
            request_args["sha"] = remote_file.sha

        file_commit = await self._perform_rest_request(
            action="Create or update file",
            error_on_not_found=True,
            method=self.githubkit_client.rest.repos.async_create_or_update_file_contents,
            **request_args,
        )

        new_sha = file_commit.content.sha if file_commit.content else None

        return remote_file.model_copy(update={"sha": new_sha if isinstance(new_sha, str) else None})
