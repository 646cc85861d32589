import shutil
from collections.abc import Hashable
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field

UserId = Hashable

TurnRole = Literal["system", "user", "assistant"]

MAX_TRANSCRIPT_TURNS = 20


class ConversationTurn(BaseModel):
    """A single message in a user's conversation."""

    model_config = ConfigDict(frozen=True)

    role: TurnRole = Field(description="Who produced the message.")
    content: str = Field(description="The text of the message.")

    @classmethod
    def user(cls, content: str) -> Self:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> Self:
        return cls(role="assistant", content=content)

    @classmethod
    def system(cls, content: str) -> Self:
        return cls(role="system", content=content)


class PendingArchive(BaseModel):
    """An extracted upload waiting to be pushed to a repository."""

    model_config = ConfigDict(frozen=True)

    directory: Path = Field(description="The directory holding the extracted files.")
    scratch_root: Path = Field(description="The per-ingestion scratch directory that owns `directory`.")
    filename: str | None = Field(default=None, description="The name the archive was uploaded with.")
    file_count: int = Field(default=0, description="The number of regular files that were extracted.")

    def dispose(self) -> None:
        """Delete the scratch directory and everything extracted into it."""

        shutil.rmtree(self.scratch_root)


class UserSession(BaseModel):
    """The transcript and pending upload of one user."""

    transcript: list[ConversationTurn] = Field(default_factory=list)
    pending_archive: PendingArchive | None = None
    last_seen: float = 0.0

    def append(self, turn: ConversationTurn, max_turns: int = MAX_TRANSCRIPT_TURNS) -> None:
        self.transcript.append(turn)
        if len(self.transcript) > max_turns:
            del self.transcript[: len(self.transcript) - max_turns]
