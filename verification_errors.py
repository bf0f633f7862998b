"""
Exceptions raised by the reachability and safety verification modules.

All of them derive from VerificationError and from the builtin exception
closest in meaning, so callers may catch either.
"""


class VerificationError(Exception):
    """Base class for verification errors"""


class DimensionMismatchError(VerificationError, ValueError):
    """Adjacent layers, or a set and a network, disagree on vector width"""


class InvalidLayerTypeError(VerificationError, TypeError):
    """An element of the layer list does not provide the layer interface"""


class InvalidArgumentError(VerificationError, ValueError):
    """Bad sample count, malformed bound vectors, unknown method name, ..."""


class MissingSpecificationError(VerificationError, ValueError):
    """No unsafe region was given"""


class UnsupportedMethodError(VerificationError, NotImplementedError):
    """The reachability method is reserved but not implemented"""
