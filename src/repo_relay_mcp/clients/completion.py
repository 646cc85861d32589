import threading
from collections.abc import Callable, Sequence
from logging import Logger
from typing import TYPE_CHECKING

from fastmcp.utilities.logging import get_logger
from openai import APIError, APITimeoutError, AsyncOpenAI, RateLimitError

from repo_relay_mcp.clients.errors.completion import CredentialsExhaustedError, RateLimitedError, UpstreamError
from repo_relay_mcp.prompts import SYSTEM_PROMPT
from repo_relay_mcp.settings import DEFAULT_COMPLETION_BASE_URL, DEFAULT_COMPLETION_MODEL, DEFAULT_COMPLETION_TIMEOUT_SECONDS

if TYPE_CHECKING:
    from openai.types.chat import ChatCompletion, ChatCompletionMessageParam

    from repo_relay_mcp.sessions.models import ConversationTurn

ATTEMPTS_PER_CREDENTIAL = 2


class CredentialPool:
    """An ordered pool of interchangeable credentials handed out round-robin.

    The cursor is shared by every caller and advances by one on every checkout, whatever the outcome of the call
    made with the credential.
    """

    def __init__(self, credentials: Sequence[str]):
        if not credentials:
            msg = "A credential pool needs at least one credential."
            raise ValueError(msg)

        self._credentials: tuple[str, ...] = tuple(credentials)
        self._cursor: int = 0
        self._lock: threading.Lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def checkout(self) -> tuple[int, str]:
        """Return the index and value of the next credential and advance the cursor."""

        with self._lock:
            index = self._cursor
            self._cursor = (index + 1) % len(self._credentials)

        return index, self._credentials[index]


def get_completion_client_factory(
    base_url: str = DEFAULT_COMPLETION_BASE_URL, timeout: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS
) -> Callable[[str], AsyncOpenAI]:
    def factory(api_key: str) -> AsyncOpenAI:
        # retries belong to the dispatcher, not the SDK
        return AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    return factory


class CompletionDispatcher:
    """Send transcripts to the completion service, spreading calls over a credential pool.

    A rate limited attempt moves on to the next credential. A call makes at most `2 x pool size` attempts before
    failing with `CredentialsExhaustedError`. Any other failure is raised immediately as `UpstreamError`.
    """

    credential_pool: CredentialPool
    model: str
    system_prompt: str
    logger: Logger

    def __init__(
        self,
        credential_pool: CredentialPool,
        model: str = DEFAULT_COMPLETION_MODEL,
        system_prompt: str = SYSTEM_PROMPT,
        client_factory: Callable[[str], AsyncOpenAI] | None = None,
        logger: Logger | None = None,
    ):
        self.credential_pool = credential_pool
        self.model = model
        self.system_prompt = system_prompt
        self.logger = logger or get_logger(name=__name__)

        self._client_factory: Callable[[str], AsyncOpenAI] = client_factory or get_completion_client_factory()
        self._clients: dict[int, AsyncOpenAI] = {}

    @property
    def max_attempts(self) -> int:
        return ATTEMPTS_PER_CREDENTIAL * len(self.credential_pool)

    def _get_client(self, index: int, credential: str) -> AsyncOpenAI:
        if (client := self._clients.get(index)) is None:
            client = self._client_factory(credential)
            self._clients[index] = client
        return client

    async def aclose(self) -> None:
        """Close every completion client created so far."""

        clients = list(self._clients.values())
        self._clients.clear()

        for client in clients:
            await client.close()

    def build_messages(self, transcript: Sequence["ConversationTurn"]) -> list["ChatCompletionMessageParam"]:
        """Prepend the system prompt. System turns already in the transcript are not forwarded."""

        messages: list[ChatCompletionMessageParam] = [{"role": "system", "content": self.system_prompt}]

        for turn in transcript:
            if turn.role == "user":
                messages.append({"role": "user", "content": turn.content})
            elif turn.role == "assistant":
                messages.append({"role": "assistant", "content": turn.content})

        return messages

    async def complete(self, transcript: Sequence["ConversationTurn"]) -> str:
        """Get the assistant's reply to a transcript.

        Raises:
            CredentialsExhaustedError: If every attempt was rate limited.
            UpstreamError: If the completion service failed for any other reason.
        """

        messages = self.build_messages(transcript)

        for attempt in range(1, self.max_attempts + 1):
            index, credential = self.credential_pool.checkout()

            try:
                return await self._complete_with(index=index, credential=credential, messages=messages)
            except RateLimitedError:
                self.logger.warning(f"Credential {index} was rate limited (attempt {attempt} of {self.max_attempts})")

        raise CredentialsExhaustedError(attempts=self.max_attempts, pool_size=len(self.credential_pool))

    async def _complete_with(self, index: int, credential: str, messages: list["ChatCompletionMessageParam"]) -> str:
        client = self._get_client(index=index, credential=credential)

        self.logger.debug(f"Requesting completion from {self.model} with credential {index} and {len(messages)} messages")

        try:
            completion: ChatCompletion = await client.chat.completions.create(model=self.model, messages=messages)
        except RateLimitError as e:
            raise RateLimitedError(credential_index=index, message=str(e)) from e
        except APITimeoutError as e:
            self.logger.exception(f"Completion request with credential {index} timed out")
            raise UpstreamError(message="The request timed out.", extra_info={"credential_index": str(index)}) from e
        except APIError as e:
            self.logger.exception(f"Completion request with credential {index} failed")
            raise UpstreamError(message=str(e), extra_info={"credential_index": str(index)}) from e

        if not completion.choices or not (content := completion.choices[0].message.content):
            raise UpstreamError(message="The completion contained no content.", extra_info={"credential_index": str(index)})

        return content
