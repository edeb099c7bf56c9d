"""
Operator error types
"""


class OperatorError(Exception):
    """Base class for all camel-kcp operator errors"""


class ConfigurationError(OperatorError):
    """The service configuration or the target control plane is unusable"""


class AmbiguousOrMissing(OperatorError):
    """No APIExport was named and zero or several candidates exist"""


class WatchFailed(OperatorError):
    """The APIExport watch reported an error"""


class Cancelled(OperatorError):
    """The stop signal was raised while waiting"""


class RetryLater(OperatorError):
    """A referenced object is not served yet, the request should be delivered again"""


class ReconcileFailed(OperatorError):
    """A reconcile step failed for a reason other than propagation delay"""
