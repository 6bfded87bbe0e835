class InboxError(Exception):
    """Base error carrying the HTTP status the API layer should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(InboxError):
    status_code = 401


class ForbiddenError(InboxError):
    status_code = 403


class ConversationLockedError(ForbiddenError):
    def __init__(self, conversation_id: str, owner_id: str | None = None):
        self.conversation_id = conversation_id
        self.owner_id = owner_id
        super().__init__("Forbidden (conversation locked)")


class ValidationError(InboxError):
    status_code = 400


class NotFoundError(InboxError):
    status_code = 404


class UpstreamError(InboxError):
    """The platform rejected or never acknowledged an outbound send."""

    status_code = 500
