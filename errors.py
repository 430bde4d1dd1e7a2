"""
Error taxonomy for the library service.

Every failure that can reach a client is a LibraryError subclass carrying a
stable `kind` and the HTTP status it maps to. Messages are human readable and
never contain storage internals.
"""


class LibraryError(Exception):
    kind = "Error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LibraryError):
    kind = "NotFound"
    status_code = 404


class UnavailableError(LibraryError):
    kind = "Unavailable"
    status_code = 400


class LimitExceededError(LibraryError):
    kind = "LimitExceeded"
    status_code = 400


class InvalidQuantityError(LibraryError):
    kind = "InvalidQuantity"
    status_code = 400


class ConflictError(LibraryError):
    kind = "Conflict"
    status_code = 409


class AuthenticationError(LibraryError):
    kind = "Unauthenticated"
    status_code = 401


class AccessDeniedError(LibraryError):
    kind = "AccessDenied"
    status_code = 403


class DatabaseError(LibraryError):
    """Storage failure (lock timeout, connectivity, constraint). Safe to retry."""

    kind = "Database"
    status_code = 503
