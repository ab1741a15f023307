"""Error kinds raised by index lifecycle and query operations."""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of an :class:`IVFNMError`."""

    RESOURCE_UNAVAILABLE = "resource_unavailable"
    NOT_TRAINED = "not_trained"
    TYPE_MISMATCH = "type_mismatch"
    SERIALIZATION_FAILURE = "serialization_failure"


class IVFNMError(RuntimeError):
    """
    Base exception for index failures.

    Carries the error ``kind`` and a human-readable ``detail``. None of these
    errors are retried internally; retry policy belongs to the caller.

    Example:
        >>> raise ResourceUnavailableError("Build IVF can't get gpu resource")
        Traceback (most recent call last):
        ...
        torch_ivf_nm.exceptions.ResourceUnavailableError: Build IVF can't get gpu resource
    """

    kind: ErrorKind

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ResourceUnavailableError(IVFNMError):
    """No device lease could be obtained, or the held lease has expired."""

    kind = ErrorKind.RESOURCE_UNAVAILABLE


class NotTrainedError(IVFNMError):
    """The operation needs a trained index."""

    kind = ErrorKind.NOT_TRAINED


class TypeMismatchError(IVFNMError):
    """The index is host-resident where a device-resident one is required."""

    kind = ErrorKind.TYPE_MISMATCH


class SerializationError(IVFNMError):
    """Reading or writing the host-form structure failed."""

    kind = ErrorKind.SERIALIZATION_FAILURE
