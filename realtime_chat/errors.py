class ChatError(Exception):

    pass


class FetchError(ChatError):
    """A read against the backend failed; callers degrade to empty/zero."""

    def __init__(self, what: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to fetch {what}: {cause}" if cause else f"Failed to fetch {what}")
        self.what = what
        self.cause = cause


class SendError(ChatError):
    """A write was rejected. Local state is left untouched."""

    def __init__(self, what: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to {what}: {cause}" if cause else f"Failed to {what}")
        self.what = what
        self.cause = cause


class InvalidTransition(ChatError):

    def __init__(self, current: str | None, requested: str) -> None:
        super().__init__(f"Call cannot move from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


class CallAlreadyActive(InvalidTransition):

    def __init__(self, conversation_id: str, call_id: str, status: str) -> None:
        ChatError.__init__(self, f"Call {call_id} is already {status} in conversation {conversation_id}")
        self.current = status
        self.requested = "pending"
        self.conversation_id = conversation_id
        self.call_id = call_id


class TransportDisconnected(ChatError):

    def __init__(self, channel: str, cause: Exception | None = None) -> None:
        super().__init__(f"Transport lost on channel {channel!r}: {cause}" if cause else f"Transport lost on channel {channel!r}")
        self.channel = channel
        self.cause = cause
