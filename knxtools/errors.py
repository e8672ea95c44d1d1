"""Exception taxonomy for the KNX tools.

Commands catch KnxToolsError and report it; anything else is a bug.
"""


class KnxToolsError(Exception):
    """Base exception for all tool errors."""


class ConfigurationError(KnxToolsError, ValueError):
    """Inconsistent or unsupported options, detected before any network I/O."""


class KnxTimeoutError(KnxToolsError, TimeoutError):
    """No response within the configured window."""

    def __init__(self, message: str, target=None, timeout: float | None = None):
        self.target = target
        self.timeout = timeout
        super().__init__(message)


class NegativeConfirmationError(KnxTimeoutError):
    """The link layer did not acknowledge a frame (L_Data.con with error bit)."""


class MalformedResponseError(KnxToolsError):
    """A reply arrived but could not be parsed or violates a mandatory invariant."""


class LinkError(KnxToolsError):
    """Fatal link or transport condition: bind failure, unknown interface, lost link."""


class LinkClosedError(LinkError):
    """Operation on a link that is (or just got) closed."""


class LinkConnectError(LinkError):
    """The KNXnet/IP server refused the connection."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class DisconnectedError(KnxToolsError):
    """The remote endpoint closed the transport-layer connection."""

    def __init__(self, address):
        self.address = address
        super().__init__(f"{address} closed the connection")


class ManagementError(KnxToolsError):
    """A device answered a management request negatively."""


class OperationCancelled(KnxToolsError):
    """The operation was interrupted; `partial` holds what was obtained so far."""

    def __init__(self, message: str = "operation canceled", partial=None):
        self.partial = list(partial) if partial is not None else []
        super().__init__(message)


class SearchInProgressError(KnxToolsError):
    """start_search was called while a search window is still open."""

    def __init__(self):
        super().__init__("search already in progress")
