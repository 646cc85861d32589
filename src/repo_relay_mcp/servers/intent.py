import re
from typing import Literal

from pydantic import BaseModel, ConfigDict

DEFAULT_REPO_NAME = "my-new-project"

UPLOAD_KEYWORDS: tuple[str, ...] = ("upload", "ارفع")

REPO_NAME_CHARACTERS = r"[A-Za-z0-9._-]+"

NAMED_REPO_PATTERN = re.compile(
    rf"(?<!\w)(?:(?:repo|repository)(?:\s+(?:named|name))?|باسم|named|name)\s*[:=]?\s+({REPO_NAME_CHARACTERS})", re.IGNORECASE
)
TRAILING_REPO_PATTERN = re.compile(rf"({REPO_NAME_CHARACTERS})\s*$")


class ChatIntent(BaseModel):
    """The message should be answered by the assistant."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["chat"] = "chat"


class UploadIntent(BaseModel):
    """The user wants their pending archive pushed to a repository."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["upload"] = "upload"
    repo_name: str


class CommandIntent(BaseModel):
    """A slash command. The messaging front-end handles these itself."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    command: str


Intent = ChatIntent | UploadIntent | CommandIntent


def has_upload_keyword(text: str) -> bool:
    lowered = text.casefold()
    return any(keyword in lowered for keyword in UPLOAD_KEYWORDS)


def extract_repo_name(text: str) -> str:
    """Find the repository name in an upload request.

    The name following `repo`, `name` or `named` wins, otherwise the last word of the message is used, unless that
    word is the upload keyword itself.
    """

    if match := NAMED_REPO_PATTERN.search(text):
        return match.group(1)

    if (match := TRAILING_REPO_PATTERN.search(text.strip())) and not has_upload_keyword(match.group(1)):
        return match.group(1)

    return DEFAULT_REPO_NAME


class IntentClassifier:
    """Decides what an inbound message asks for before the relay acts on it."""

    def __init__(self, upload_keywords: tuple[str, ...] = UPLOAD_KEYWORDS):
        self.upload_keywords: tuple[str, ...] = tuple(keyword.casefold() for keyword in upload_keywords)

    def classify(self, text: str) -> Intent:
        stripped = text.strip()

        if stripped.startswith("/"):
            # group chats address commands as /command@bot_name
            return CommandIntent(command=stripped.split()[0][1:].partition("@")[0])

        lowered = stripped.casefold()

        if any(keyword in lowered for keyword in self.upload_keywords):
            return UploadIntent(repo_name=extract_repo_name(stripped))

        return ChatIntent()
