"""Custom exceptions for codeloop."""


_CONTEXT_EXCEEDED_PATTERNS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "token limit",
    "max_tokens",
    "too long",
    "exceeds the model",
)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class CodeloopError(Exception):
    """Base exception for codeloop."""

    pass


class ConfigurationError(CodeloopError):
    """Configuration-related errors."""

    pass


class LLMError(CodeloopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, context overflow, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_context_exceeded(self) -> bool:
        """Whether the provider rejected the request for exceeding the context window."""
        if self.status_code != 400:
            return False
        message = str(self)
        return any(pattern in message for pattern in _CONTEXT_EXCEEDED_PATTERNS)

    @property
    def is_transient(self) -> bool:
        """Whether the status code is worth retrying."""
        return self.status_code in TRANSIENT_STATUS_CODES


class LLMConnectionError(LLMError):
    """Network-layer failure while talking to the provider (timeouts, resets)."""

    pass


class LLMCancelledError(LLMError):
    """The active request was aborted by the caller."""

    pass


class ToolError(CodeloopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.message = message


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name
