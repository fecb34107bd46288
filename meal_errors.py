"""Exceptions raised across the meal logging flow."""


class MealLogError(Exception):
    """Base class for every error the engine raises on purpose."""


class TransientRemoteFailure(MealLogError):
    """A collaborator (language model, catalog) failed in a way worth retrying."""


class PermanentNotFound(MealLogError):
    """The catalog has nothing for a requested id."""


class MalformedParserOutput(MealLogError):
    """The parser answered, but not with a usable meal JSON."""

    def __init__(self, message, raw=None):
        super().__init__(message)
        self.raw = raw


class SessionExpired(MealLogError):
    """The user's session timed out before the message arrived."""


class InvalidUserInput(MealLogError):
    """A reply could not be understood as an answer to the current prompt."""
