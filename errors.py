"""
Error kinds raised by the marketplace services.

Routes never build HTTP errors themselves; main.py translates these into
`{"error": message}` responses using each kind's status code.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(MarketplaceError):
    status_code = 404


class InvalidInput(MarketplaceError):
    status_code = 400


class InvalidState(MarketplaceError):
    status_code = 400


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class Internal(MarketplaceError):
    status_code = 500
