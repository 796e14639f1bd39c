"""
Exceptions raised by the directory layer.

Every public Reader, Writer and Session operation reports failures through
DirectoryError. The subclasses exist for callers that want to tell the
failure modes apart; catching DirectoryError is always enough.
"""

from typing import Optional


class DirectoryError(Exception):
    """Raised when a directory operation fails."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when a session cannot be negotiated with the directory server."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        if url and url not in message:
            message = f"{message} - {url}"
        super().__init__(message)


class InvalidQueryError(DirectoryError):
    """Raised when a query or search setting cannot be turned into a valid search."""
    pass


class EntryNotFoundError(DirectoryError):
    """Raised when an entry does not exist on the directory."""
    pass


class AttributeNotFoundError(DirectoryError):
    """Raised when an attribute does not exist in an entry."""
    pass


class PasswordEncodingError(DirectoryError):
    """Raised when a password cannot be encoded or stored on the directory."""
    pass
