ExtraInfoType = dict[str, str | None]


class CompletionError(Exception):
    """An error from the completion dispatcher."""

    def __init__(self, message: str, extra_info: ExtraInfoType | None = None):
        msg = message
        if extra_info:
            msg += " (" + ", ".join([f"{key}: {value}" for key, value in extra_info.items() if value is not None]) + ")"
        super().__init__(msg)


class RateLimitedError(CompletionError):
    """The completion service rejected the request because the credential is rate limited."""

    def __init__(self, credential_index: int, message: str | None = None):
        super().__init__(
            message="The completion service rate limited the request.",
            extra_info={"credential_index": str(credential_index), "message": message},
        )


class CredentialsExhaustedError(RateLimitedError):
    """Every attempt allowed for a completion call was rate limited."""

    def __init__(self, attempts: int, pool_size: int):
        CompletionError.__init__(
            self,
            message="All credentials exhausted.",
            extra_info={"attempts": str(attempts), "pool_size": str(pool_size)},
        )
        self.attempts: int = attempts


class UpstreamError(CompletionError):
    """A non-retryable failure from the completion service."""

    def __init__(self, message: str | None = None, extra_info: ExtraInfoType | None = None):
        if not extra_info:
            extra_info = {}
        super().__init__(message="The completion service failed.", extra_info={"message": message, **extra_info})
