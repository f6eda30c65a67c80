"""Error taxonomy for the chat pipeline."""


class ChatError(Exception):
    """Base class for errors surfaced to the conversation controller."""


class PersistenceError(ChatError):
    """Backend read or write failure."""


class ValidationError(ChatError):
    """Rejected user input (empty message, blank title)."""


class DispatchError(ChatError):
    """Completion service failure.

    ``kind`` is one of ``provider``, ``timeout``, ``malformed`` or ``cancelled``.
    """

    def __init__(self, message: str, kind: str = "provider"):
        super().__init__(message)
        self.kind = kind
