class VapException(Exception):
    """Base class for policy viewer errors."""


class MalformedSourceError(VapException):
    """A policy object is missing fields required to build a document."""


class ParamsResolutionError(VapException):
    """A parameter object could not be retrieved for a policy."""


class EngineLoadError(VapException):
    """The evaluation engine could not be loaded. Fatal for the process."""


class EngineNotReadyError(VapException):
    """The evaluation engine was called before it finished loading."""


class EvaluationEngineError(VapException):
    """The evaluation engine rejected or failed on a given input."""


class ClusterApiError(VapException):
    """A request to the Kubernetes API server failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceNotFoundError(ClusterApiError):
    """The requested cluster object does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class DocumentStateError(VapException):
    """A document was edited while it is not editable."""


class SessionNotFoundError(VapException):
    """No test session exists with the given id."""
