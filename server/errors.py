"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries a stable ``code`` so callers get a category, never
internal details such as which half of a credential check failed.
"""


class QuickPicError(Exception):
    """Base exception for business-rule failures"""
    code = "error"
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class CredentialsError(QuickPicError):
    code = "invalid_credentials"
    message = "Invalid username or password"


class UsernameExistsError(QuickPicError):
    code = "username_exists"
    message = "Username already exists"


class UserNotFoundError(QuickPicError):
    code = "user_not_found"
    message = "User not found"


class _KindError(QuickPicError):
    """Error with a fixed set of sub-kinds, each with its own message"""
    messages: dict[str, str] = {}

    def __init__(self, kind: str):
        if kind not in self.messages:
            raise ValueError(f"Unknown {type(self).__name__} kind: {kind}")
        self.kind = kind
        self.code = kind
        super().__init__(self.messages[kind])

    def __reduce__(self):
        return type(self), (self.kind,)


class TokenError(_KindError):
    INVALID = "invalid_token"
    EXPIRED = "token_expired"

    messages = {
        INVALID: "Invalid token",
        EXPIRED: "Token expired",
    }


class FriendStateError(_KindError):
    ALREADY_FRIENDS = "already_friends"
    REQUEST_EXISTS = "friend_request_exists"
    CANNOT_ADD_SELF = "cannot_add_self"
    NOT_FOUND = "friend_request_not_found"
    UNAUTHORIZED = "unauthorized"

    messages = {
        ALREADY_FRIENDS: "Already friends",
        REQUEST_EXISTS: "Friend request already exists",
        CANNOT_ADD_SELF: "Cannot add yourself as a friend",
        NOT_FOUND: "Friend request not found",
        UNAUTHORIZED: "Not authorized to act on this friend request",
    }


class RelayError(_KindError):
    NOT_FRIENDS = "not_friends"
    MESSAGE_NOT_FOUND = "message_not_found"
    UNAUTHORIZED = "unauthorized"

    messages = {
        NOT_FRIENDS: "You can only send messages to friends",
        MESSAGE_NOT_FOUND: "Message not found",
        UNAUTHORIZED: "Not authorized to acknowledge this message",
    }
