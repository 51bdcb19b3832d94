"""
Mail Fetch error types

Every failure the tool can report derives from MailFetchError so the CLI can
map it to an exit code in one place.
"""

from typing import Optional


class MailFetchError(Exception):
    """Base class for all Mail Fetch failures"""


class ConfigurationError(MailFetchError):
    """Missing or invalid command-line input"""


class AuthenticationError(MailFetchError):
    """The client-credentials token exchange was rejected or could not be made"""


class PageFetchError(MailFetchError):
    """A collection page could not be retrieved from the mail API"""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class WriterError(MailFetchError):
    """The results file could not be created or written"""
