"""Error type shared by mailkit services."""


class MailError(Exception):
    """Base exception for mail directory errors."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        self.code = code
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)
