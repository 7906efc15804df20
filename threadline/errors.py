"""
Error taxonomy for threadline.

Every error carries a status_code so the HTTP layer can map it without
knowing the concrete type.
"""

from __future__ import annotations


class ThreadlineError(Exception):
    """Base for all errors raised by threadline."""

    status_code = 500


class UnsupportedModelError(ThreadlineError):
    """The model string matches no registered provider prefix."""

    status_code = 400

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unsupported model: {model!r}")


class ProviderError(ThreadlineError):
    """A vendor call failed. May be transient; the caller decides on retry."""

    status_code = 502

    def __init__(self, provider: str, cause: str, upstream_status: int | None = None):
        self.provider = provider
        self.cause = cause
        self.upstream_status = upstream_status
        super().__init__(f"{provider} error: {cause}")


class ContextNotFoundError(ThreadlineError):
    """No live context exists for the conversation id."""

    status_code = 404

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Context not found: {conversation_id}")


class ValidationError(ThreadlineError):
    """Malformed request: missing messages, bad temperature or token bounds."""

    status_code = 400


class ConversationNotFoundError(ThreadlineError):
    status_code = 404

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class QuotaExceededError(ThreadlineError):
    status_code = 429

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(
            f"Usage quota exceeded for {resource}. Please upgrade your plan."
        )
