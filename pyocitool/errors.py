import copy


class OCIError(Exception):
    """Base class for all errors raised by pyocitool."""


class NotFoundError(OCIError, FileNotFoundError):
    """Raised when a blob, reference or manifest is not in the store."""


class InvalidDigestError(OCIError, ValueError):
    """Raised when a digest is not of the form '<algorithm>:<hex>'."""


class InvalidReferenceError(OCIError, ValueError):
    """Raised when a reference name can not be stored under refs/."""


class DigestMismatchError(OCIError):
    """Raised when content does not hash to the descriptor digest."""


class SizeMismatchError(OCIError):
    """Raised when content length differs from the descriptor size."""


class InvalidMediaTypeError(OCIError):
    """Raised when a descriptor has a media type that is not allowed."""


class MalformedManifestError(OCIError):
    """Raised when a manifest can not be decoded or has no layers."""


class UnsafePathError(OCIError):
    """Raised when a layer entry would be written outside the destination."""


class UnsafeLinkError(OCIError):
    """Raised when a layer link points outside the destination."""


class DuplicateEntryError(OCIError):
    """Raised when a layer contains the same path more than once."""


class UnimplementedError(OCIError, NotImplementedError):
    """Raised when a storage backing does not support an operation."""


class CancelledError(OCIError):
    """Raised when an operation observes a cancelled context."""


class LayoutVersionError(OCIError):
    """Raised when oci-layout is missing or has an unknown version."""


class UnsupportedOSError(OCIError):
    """Raised when an image config targets an OS without runtime support."""


class UnknownTypeError(OCIError):
    """Raised when the type of an input can not be determined."""


class WalkError(OCIError):
    """Raised when a store can not be traversed."""


class SchemaValidationError(OCIError):
    """Raised when a document does not match its JSON schema.

    All violations are collected in `errors`.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


def wrap(err: OCIError, message: str) -> OCIError:
    """Return a copy of err, of the same type, with message prepended"""
    wrapped = copy.copy(err)
    wrapped.args = (f"{message}: {err}",) + tuple(err.args[1:])
    return wrapped
