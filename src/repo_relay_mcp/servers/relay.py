import base64
import binascii
import re
from logging import Logger
from typing import Any

from fastmcp.server import FastMCP
from fastmcp.tools import Tool
from fastmcp.utilities.logging import get_logger
from starlette.requests import Request
from starlette.responses import JSONResponse

from repo_relay_mcp.archives.intake import ArchiveExtractionError, ArchiveIntake, ArchiveTooLargeError, IntakeError
from repo_relay_mcp.clients.completion import CompletionDispatcher
from repo_relay_mcp.clients.errors.completion import CompletionError, CredentialsExhaustedError
from repo_relay_mcp.clients.errors.messaging import DownloadError, DownloadTooLargeError
from repo_relay_mcp.clients.messaging import MessagingFileClient
from repo_relay_mcp.clients.models.github import SyncResult
from repo_relay_mcp.servers.intent import CommandIntent, IntentClassifier, UploadIntent
from repo_relay_mcp.servers.shared.annotations import ARCHIVE_BASE64, FILE_PATH, FILENAME, REPO_NAME, TEXT, USER_ID
from repo_relay_mcp.servers.shared.replies import (
    REPLY_ARCHIVE_CORRUPT,
    REPLY_ARCHIVE_RECEIVED,
    REPLY_ARCHIVE_TOO_LARGE,
    REPLY_ARCHIVE_UNREADABLE,
    REPLY_COMPLETION_BUSY,
    REPLY_COMPLETION_FAILED,
    REPLY_DOWNLOAD_FAILED,
    REPLY_HELP,
    REPLY_HOSTING_DISABLED,
    REPLY_INVALID_REPO_NAME,
    REPLY_NEW_SESSION,
    REPLY_NO_ARCHIVE,
    REPLY_NOT_A_ZIP,
    REPLY_SYNC_FAILED,
    REPLY_SYNC_PARTIAL,
    REPLY_SYNC_SUCCEEDED,
    REPLY_UNKNOWN_COMMAND,
    REPLY_WELCOME,
)
from repo_relay_mcp.sessions.models import ConversationTurn
from repo_relay_mcp.sessions.store import SessionStore
from repo_relay_mcp.sync.pipeline import RepositoryUnavailableError, SyncPipeline, SyncPreconditionError

VALID_REPO_NAME = re.compile(r"^[A-Za-z0-9._-]{1,100}$")

ARCHIVE_SUFFIX = ".zip"


def format_sync_reply(result: SyncResult) -> str:
    if result.succeeded:
        return REPLY_SYNC_SUCCEEDED.format(html_url=result.html_url)

    return REPLY_SYNC_PARTIAL.format(
        uploaded=len(result.outcomes) - len(result.failed),
        total=len(result.outcomes),
        html_url=result.html_url,
        failed="\n".join(f"- {path}" for path in result.failed),
    )


class RelayServer:
    """The tools a messaging front-end calls to relay a user's messages and uploads.

    Every tool returns the text to send back to the user. Failures are logged and answered with a fixed message,
    internal error details never reach the user.
    """

    dispatcher: CompletionDispatcher
    session_store: SessionStore
    archive_intake: ArchiveIntake
    sync_pipeline: SyncPipeline | None
    messaging_client: MessagingFileClient | None
    intent_classifier: IntentClassifier
    logger: Logger

    def __init__(
        self,
        dispatcher: CompletionDispatcher,
        session_store: SessionStore,
        archive_intake: ArchiveIntake | None = None,
        sync_pipeline: SyncPipeline | None = None,
        messaging_client: MessagingFileClient | None = None,
        intent_classifier: IntentClassifier | None = None,
        logger: Logger | None = None,
    ):
        self.logger = logger or get_logger(name=__name__)
        self.dispatcher = dispatcher
        self.session_store = session_store
        self.archive_intake = archive_intake or ArchiveIntake(session_store=session_store)
        self.sync_pipeline = sync_pipeline
        self.messaging_client = messaging_client
        self.intent_classifier = intent_classifier or IntentClassifier()

    def register_tools(self, fastmcp: FastMCP[Any]) -> FastMCP[Any]:
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.send_message))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.new_session))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.upload_archive))

        if self.messaging_client is not None:
            _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.upload_archive_from_messaging))

        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.push_archive))

        return fastmcp

    def register_routes(self, fastmcp: FastMCP[Any]) -> FastMCP[Any]:
        _ = fastmcp.custom_route(path="/health", methods=["GET"])(self.health)

        return fastmcp

    async def health(self, request: Request) -> JSONResponse:  # noqa: ARG002
        return JSONResponse({"status": "running"})

    async def aclose(self) -> None:
        """Release the completion clients, the messaging client and every pending archive."""

        await self.dispatcher.aclose()

        if self.messaging_client is not None:
            await self.messaging_client.aclose()

        await self.session_store.close()

    async def send_message(self, user_id: USER_ID, text: TEXT) -> str:
        """Relay a text message from a user and get the reply to send back to them.

        Asking for an upload (for example "upload it to repo my-project") pushes the user's pending archive."""

        intent = self.intent_classifier.classify(text)

        if isinstance(intent, CommandIntent):
            return await self._command(user_id=user_id, command=intent.command)

        if isinstance(intent, UploadIntent):
            return await self.push_archive(user_id=user_id, repo_name=intent.repo_name)

        return await self._chat(user_id=user_id, text=text)

    async def _command(self, user_id: str, command: str) -> str:
        match command.lower():
            case "start":
                return REPLY_WELCOME
            case "help":
                return REPLY_HELP
            case "new":
                return await self.new_session(user_id=user_id)
            case _:
                return REPLY_UNKNOWN_COMMAND

    async def _chat(self, user_id: str, text: str) -> str:
        transcript = await self.session_store.get(user_id)
        user_turn = ConversationTurn.user(text)

        try:
            answer = await self.dispatcher.complete([*transcript, user_turn])
        except CredentialsExhaustedError:
            self.logger.exception(f"Every completion credential was rate limited while answering user {user_id}")
            return REPLY_COMPLETION_BUSY
        except CompletionError:
            self.logger.exception(f"Completion failed while answering user {user_id}")
            return REPLY_COMPLETION_FAILED

        await self.session_store.append_exchange(user_id, user_turn=user_turn, assistant_turn=ConversationTurn.assistant(answer))

        return answer

    async def new_session(self, user_id: USER_ID) -> str:
        """Forget the user's conversation and any archive they uploaded."""

        await self.session_store.clear(user_id)

        return REPLY_NEW_SESSION

    async def upload_archive(self, user_id: USER_ID, archive_base64: ARCHIVE_BASE64, filename: FILENAME) -> str:
        """Accept a ZIP archive from a user. It replaces any archive the user uploaded before."""

        if not filename.lower().endswith(ARCHIVE_SUFFIX):
            return REPLY_NOT_A_ZIP

        try:
            archive_bytes = base64.b64decode(archive_base64, validate=True)
        except binascii.Error:
            self.logger.warning(f"Archive {filename} from user {user_id} is not valid base64")
            return REPLY_ARCHIVE_CORRUPT

        return await self._ingest(user_id=user_id, archive_bytes=archive_bytes, filename=filename)

    async def upload_archive_from_messaging(self, user_id: USER_ID, file_path: FILE_PATH, filename: FILENAME) -> str:
        """Download a ZIP archive the user sent through the messaging service and accept it."""

        if not filename.lower().endswith(ARCHIVE_SUFFIX):
            return REPLY_NOT_A_ZIP

        if self.messaging_client is None:
            return REPLY_DOWNLOAD_FAILED

        try:
            archive_bytes = await self.messaging_client.download(file_path)
        except DownloadTooLargeError:
            self.logger.warning(f"Archive {filename} from user {user_id} is too large to download")
            return REPLY_ARCHIVE_TOO_LARGE
        except DownloadError:
            self.logger.exception(f"Could not download archive {filename} for user {user_id}")
            return REPLY_DOWNLOAD_FAILED

        return await self._ingest(user_id=user_id, archive_bytes=archive_bytes, filename=filename)

    async def _ingest(self, user_id: str, archive_bytes: bytes, filename: str) -> str:
        try:
            archive = await self.archive_intake.ingest(user_id=user_id, archive_bytes=archive_bytes, filename=filename)
        except ArchiveTooLargeError as e:
            self.logger.warning(f"Rejected archive {filename} from user {user_id}: {e}")
            return REPLY_ARCHIVE_TOO_LARGE
        except ArchiveExtractionError:
            self.logger.exception(f"Could not extract archive {filename} from user {user_id}")
            return REPLY_ARCHIVE_UNREADABLE
        except IntakeError as e:
            self.logger.warning(f"Rejected archive {filename} from user {user_id}: {e}")
            return REPLY_ARCHIVE_CORRUPT

        return REPLY_ARCHIVE_RECEIVED.format(file_count=archive.file_count)

    async def push_archive(self, user_id: USER_ID, repo_name: REPO_NAME) -> str:
        """Upload the user's pending archive to a GitHub repository and return its address."""

        async with self.session_store.lease_pending_archive(user_id) as archive:
            if archive is None:
                return REPLY_NO_ARCHIVE

            if self.sync_pipeline is None:
                return REPLY_HOSTING_DISABLED

            if not VALID_REPO_NAME.match(repo_name):
                return REPLY_INVALID_REPO_NAME

            try:
                result: SyncResult = await self.sync_pipeline.synchronize(working_dir=archive.directory, repo_name=repo_name)
            except SyncPreconditionError:
                self.logger.exception(f"Pending archive for user {user_id} is gone")
                return REPLY_NO_ARCHIVE
            except RepositoryUnavailableError:
                self.logger.exception(f"Could not upload the archive of user {user_id} to {repo_name}")
                return REPLY_SYNC_FAILED

        return format_sync_reply(result)
