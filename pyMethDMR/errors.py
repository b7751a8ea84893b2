class DMRInputError(ValueError):
    """Raised when count matrices, positions or the design cannot be analysed."""


class EmptyNullPoolError(RuntimeError):
    """Raised when significance is requested against a null pool with no statistics."""
