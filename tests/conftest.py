import io
import zipfile
from collections.abc import AsyncGenerator, Callable, Sequence
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware
from githubkit.exception import RequestFailed
from githubkit.response import Response
from githubkit.versions.v2022_11_28.models import ContentFile
from openai import APITimeoutError, AuthenticationError, RateLimitError
from pydantic import BaseModel

from repo_relay_mcp.clients.completion import CompletionDispatcher, CredentialPool
from repo_relay_mcp.clients.github import RepositoryHostClient
from repo_relay_mcp.sessions.store import SessionStore

GITHUB_API_URL = "https://api.github.com"
COMPLETION_API_URL = "https://api.groq.com/openai/v1/chat/completions"


def request_failed(status_code: int, method: str, path: str) -> RequestFailed:
    request = httpx.Request(method, f"{GITHUB_API_URL}{path}")
    return RequestFailed(Response(httpx.Response(status_code, request=request, json={"message": "error"}), Any))


def build_zip(files: dict[str, bytes | str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as zip_file:
        for name, content in files.items():
            zip_file.writestr(name, content)
    return buffer.getvalue()


def encrypted_zip() -> bytes:
    """A zip whose only member is flagged as encrypted in both its local and central directory headers."""

    archive_bytes = bytearray(build_zip({"secret.txt": "hidden"}))

    local_header = archive_bytes.find(b"PK\x03\x04")
    archive_bytes[local_header + 6] |= 0x1

    central_header = archive_bytes.find(b"PK\x01\x02")
    archive_bytes[central_header + 8] |= 0x1

    return bytes(archive_bytes)


# Fake GitHub


class StoredFile(BaseModel):
    content: str
    sha: str


class FakeGitHubRepos:
    """An in-memory stand-in for `githubkit_client.rest.repos` that behaves like the GitHub REST API."""

    def __init__(self, login: str):
        self.login: str = login
        self.repositories: dict[str, dict[str, StoredFile]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_paths: set[str] = set()
        self.fail_create_repository: int | None = None
        self._sha_counter: int = 0

    def _repository(self, name: str) -> SimpleNamespace:
        return SimpleNamespace(
            name=name,
            owner=SimpleNamespace(login=self.login),
            html_url=f"https://github.com/{self.login}/{name}",
            private=True,
            default_branch="main",
        )

    def _next_sha(self) -> str:
        self._sha_counter += 1
        return f"sha{self._sha_counter}"

    async def async_create_for_authenticated_user(self, *, name: str, private: bool) -> SimpleNamespace:
        self.calls.append(("create_for_authenticated_user", {"name": name, "private": private}))

        if self.fail_create_repository is not None:
            raise request_failed(self.fail_create_repository, "POST", "/user/repos")

        if name in self.repositories:
            raise request_failed(422, "POST", "/user/repos")

        self.repositories[name] = {}

        return SimpleNamespace(parsed_data=self._repository(name))

    async def async_get(self, *, owner: str, repo: str) -> SimpleNamespace:
        self.calls.append(("get", {"owner": owner, "repo": repo}))

        if owner != self.login or repo not in self.repositories:
            raise request_failed(404, "GET", f"/repos/{owner}/{repo}")

        return SimpleNamespace(parsed_data=self._repository(repo))

    async def async_get_content(self, *, owner: str, repo: str, path: str) -> SimpleNamespace:
        self.calls.append(("get_content", {"owner": owner, "repo": repo, "path": path}))

        files = self.repositories.get(repo)

        if owner != self.login or files is None or path not in files:
            raise request_failed(404, "GET", f"/repos/{owner}/{repo}/contents/{path}")

        return SimpleNamespace(parsed_data=ContentFile.model_construct(path=path, sha=files[path].sha, content=files[path].content))

    async def async_create_or_update_file_contents(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(("create_or_update_file_contents", kwargs))

        repo: str = kwargs["repo"]
        path: str = kwargs["path"]
        files = self.repositories[repo]

        if path in self.fail_paths:
            raise request_failed(500, "PUT", f"/repos/{self.login}/{repo}/contents/{path}")

        # GitHub refuses to overwrite a file unless the current blob hash is supplied
        if path in files and kwargs.get("sha") != files[path].sha:
            raise request_failed(409, "PUT", f"/repos/{self.login}/{repo}/contents/{path}")

        if path not in files and "sha" in kwargs:
            raise request_failed(422, "PUT", f"/repos/{self.login}/{repo}/contents/{path}")

        files[path] = StoredFile(content=kwargs["content"], sha=self._next_sha())

        return SimpleNamespace(parsed_data=SimpleNamespace(content=SimpleNamespace(sha=files[path].sha)))

    def calls_named(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call_name, kwargs in self.calls if call_name == name]


class FakeGitHubUsers:
    def __init__(self, login: str):
        self.login: str = login
        self.calls: int = 0

    async def async_get_authenticated(self) -> SimpleNamespace:
        self.calls += 1
        return SimpleNamespace(parsed_data=SimpleNamespace(login=self.login))


class FakeGitHubKit:
    def __init__(self, login: str = "octo"):
        self.rest: SimpleNamespace = SimpleNamespace(repos=FakeGitHubRepos(login=login), users=FakeGitHubUsers(login=login))

    @property
    def repos(self) -> FakeGitHubRepos:
        return self.rest.repos


@pytest.fixture
def fake_githubkit() -> FakeGitHubKit:
    return FakeGitHubKit()


@pytest.fixture
def host_client(fake_githubkit: FakeGitHubKit) -> RepositoryHostClient:
    return RepositoryHostClient(githubkit_client=fake_githubkit)  # pyright: ignore[reportArgumentType]


# Fake completion service


def rate_limit_error() -> RateLimitError:
    request = httpx.Request("POST", COMPLETION_API_URL)
    return RateLimitError("Rate limit reached", response=httpx.Response(429, request=request), body=None)


def authentication_error() -> AuthenticationError:
    request = httpx.Request("POST", COMPLETION_API_URL)
    return AuthenticationError("Invalid API key", response=httpx.Response(401, request=request), body=None)


def timeout_error() -> APITimeoutError:
    return APITimeoutError(request=httpx.Request("POST", COMPLETION_API_URL))


def chat_completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


CompletionBehavior = Callable[[str, list[dict[str, str]]], SimpleNamespace]


class FakeCompletions:
    def __init__(self, api_key: str, service: "FakeCompletionService"):
        self.api_key: str = api_key
        self.service: FakeCompletionService = service

    async def create(self, *, model: str, messages: list[dict[str, str]]) -> SimpleNamespace:
        self.service.calls.append((self.api_key, model, messages))
        return self.service.behavior(self.api_key, messages)


class FakeCompletionClient:
    def __init__(self, api_key: str, service: "FakeCompletionService"):
        self.api_key: str = api_key
        self.service: FakeCompletionService = service
        self.chat: SimpleNamespace = SimpleNamespace(completions=FakeCompletions(api_key=api_key, service=service))

    async def close(self) -> None:
        self.service.closed_clients.append(self.api_key)


class FakeCompletionService:
    """Records which credential each completion request used. `behavior` decides the response or raises."""

    def __init__(self, behavior: CompletionBehavior | None = None):
        self.behavior: CompletionBehavior = behavior or (lambda api_key, _messages: chat_completion(f"answer from {api_key}"))
        self.calls: list[tuple[str, str, list[dict[str, str]]]] = []
        self.created_clients: list[str] = []
        self.closed_clients: list[str] = []

    def client_factory(self, api_key: str) -> Any:
        self.created_clients.append(api_key)
        return FakeCompletionClient(api_key=api_key, service=self)

    @property
    def keys_used(self) -> list[str]:
        return [api_key for api_key, _, _ in self.calls]


@pytest.fixture
def completion_service() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def credentials() -> list[str]:
    return ["key-a", "key-b", "key-c"]


@pytest.fixture
def dispatcher(credentials: list[str], completion_service: FakeCompletionService) -> CompletionDispatcher:
    return CompletionDispatcher(
        credential_pool=CredentialPool(credentials=credentials), model="test-model", client_factory=completion_service.client_factory
    )


# Sessions


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now: float = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_store(clock: FakeClock) -> AsyncGenerator[SessionStore, Any]:
    session_store = SessionStore(ttl_seconds=3600, max_users=100, clock=clock)
    yield session_store
    await session_store.close()


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


# MCP


@pytest.fixture
def fastmcp() -> FastMCP[None]:
    return FastMCP[None](name="Repo Relay MCP", middleware=[LoggingMiddleware(include_payloads=False)])


def handle_exclude_keys(dictionary: dict[str, Any], exclude_keys: list[str] | None = None) -> dict[str, Any]:
    if exclude_keys is None:
        return dictionary
    return {key: value for key, value in dictionary.items() if key not in exclude_keys}


def dump_list_for_snapshot(
    basemodels: Sequence[BaseModel] | None,
    /,
    exclude_keys: list[str] | None = None,
    exclude_none: bool = True,
) -> list[dict[str, Any]]:
    if basemodels is None:
        return []

    return [handle_exclude_keys(item.model_dump(exclude_none=exclude_none), exclude_keys) for item in basemodels]
