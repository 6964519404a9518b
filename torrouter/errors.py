"""Exceptions raised inside the agent.

None of these reach an HTTP client as a traceback: the dispatcher turns them
into an ActionResult and the server turns MalformedRequestError into a JSON
error body.
"""


class TorRouterError(Exception):
    """Base class for agent errors."""

    http_status = 200


class ValidationError(TorRouterError):
    """An action request failed its input constraints; nothing was run."""


class UnknownActionError(TorRouterError):
    """The requested action is not in the registry."""

    http_status = 400

    def __init__(self, action):
        super().__init__(f"Unknown action: {action}")
        self.action = action


class BusyError(TorRouterError):
    """Another operation on the same subsystem is still running."""

    def __init__(self, subsystem):
        super().__init__(f"Another {subsystem} operation is in progress.")
        self.subsystem = subsystem


class MalformedRequestError(TorRouterError):
    """The HTTP request could not be decoded."""

    def __init__(self, message, http_status=400):
        super().__init__(message)
        self.http_status = http_status
