class Error(Exception):
    pass


class ProtocolError(Error):
    """The debugfs output no longer matches the commands that were sent."""


class LayoutError(Error):
    pass


class SessionClosedError(Error):
    pass


class SessionDisposedError(SessionClosedError):
    pass
