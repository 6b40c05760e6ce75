"""Error taxonomy shared by the store, providers, tools and the agent loop."""


class SlopError(Exception):
    pass


class NotFoundError(SlopError):
    """A thread or message is absent."""


class AmbiguousIDError(NotFoundError):
    """A short ID prefix matches more than one thread or message."""

    def __init__(self, prefix: str, matches: int):
        super().__init__(f"ID prefix '{prefix}' is ambiguous ({matches} matches)")
        self.prefix = prefix
        self.matches = matches


class InvalidMessageError(SlopError):
    pass


class CorruptHistoryError(SlopError):
    """Parent links do not terminate at a root."""


class ProviderError(SlopError):
    """Any LLM backend failure. `cause` holds the underlying exception."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ProviderAuthError(ProviderError):
    pass


class ProviderTransportError(ProviderError):
    pass


class ProviderQuotaError(ProviderError):
    pass


class UnsupportedProviderError(SlopError):
    pass


class ToolExecutionError(SlopError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class ToolExecutorUnavailableError(SlopError):
    """The tool host is not initialized or cannot be reached."""


class ToolLoopExceededError(SlopError):
    def __init__(self, max_cycles: int):
        super().__init__(f"Model kept requesting tools after {max_cycles} tool cycles")
        self.max_cycles = max_cycles


class TurnCancelledError(SlopError):
    pass
