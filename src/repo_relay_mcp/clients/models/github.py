import base64
from typing import Literal, Self

from githubkit.versions.v2022_11_28.models import FullRepository as GitHubKitFullRepository
from pydantic import BaseModel, ConfigDict, Field


class Repository(BaseModel):
    """A repository on the hosting service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="The name of the repository.")
    owner: str = Field(description="The login of the repository owner.")
    html_url: str = Field(description="The canonical web address of the repository.")
    private: bool = Field(description="Whether the repository is private.")
    default_branch: str | None = Field(default=None, description="The default branch of the repository.")

    @classmethod
    def from_full_repository(cls, full_repository: GitHubKitFullRepository) -> Self:
        return cls(
            name=full_repository.name,
            owner=full_repository.owner.login,
            html_url=full_repository.html_url,
            private=full_repository.private,
            default_branch=full_repository.default_branch,
        )


class RemoteFile(BaseModel):
    """One file of repository state: where it lives, what it holds and, when it already exists, its blob hash."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="The path of the file relative to the repository root.")
    content: bytes = Field(repr=False, description="The raw content of the file.")
    sha: str | None = Field(default=None, description="The blob hash of the file currently stored in the repository.")

    @property
    def encoded_content(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


FileSyncAction = Literal["created", "updated", "failed"]


class FileSyncOutcome(BaseModel):
    """What happened to a single file during a synchronization."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="The path of the file relative to the repository root.")
    action: FileSyncAction = Field(description="Whether the file was created, updated or failed to upload.")
    error: str | None = Field(default=None, description="Why the upload failed, when it did.")


class SyncResult(BaseModel):
    """The destination repository and the per-file outcomes of a synchronization."""

    repository: Repository
    outcomes: list[FileSyncOutcome] = Field(default_factory=list)

    @property
    def html_url(self) -> str:
        return self.repository.html_url

    @property
    def created(self) -> list[str]:
        return [outcome.path for outcome in self.outcomes if outcome.action == "created"]

    @property
    def updated(self) -> list[str]:
        return [outcome.path for outcome in self.outcomes if outcome.action == "updated"]

    @property
    def failed(self) -> list[str]:
        return [outcome.path for outcome in self.outcomes if outcome.action == "failed"]

    @property
    def succeeded(self) -> bool:
        return not self.failed
