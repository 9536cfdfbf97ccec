# errors.py


class BotError(Exception):
    """Base for every error raised by the shop core."""


class ValidationError(BotError):
    """Malformed wizard input. The message is shown to the admin as the re-prompt reason."""


class NotFound(BotError):
    """A required account, credential or user does not exist."""


class StoreError(BotError):
    """The data store failed or answered with something unexpected."""


class TransportError(BotError):
    """The chat transport or the mail service failed."""
