"""Typed failures raised by the assembly operations."""


class AssemblyError(Exception):
    """Base for all failures surfaced by the assembly operations."""


class InvalidInputError(AssemblyError, ValueError):
    """The request is empty or malformed."""


class EncryptedDocumentError(AssemblyError, ValueError):
    """A source document is password protected."""


class UnreadableDocumentError(AssemblyError, ValueError):
    """A source document is not a readable PDF."""


class EmptyResultError(AssemblyError, ValueError):
    """The operation produced a document without pages."""


class OperationTimeoutError(AssemblyError, TimeoutError):
    """The caller-imposed deadline expired before the operation finished."""


class ResourceError(AssemblyError, OSError):
    """Scratch storage could not be created, read or written."""


class ConversionError(AssemblyError, RuntimeError):
    """An external converter is missing or failed."""
