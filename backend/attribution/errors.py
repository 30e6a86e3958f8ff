class AttributionError(ValueError):
    """Base class for caller-visible attribution errors."""


class AttributionValidationError(AttributionError):
    pass


class AttributionNotFoundError(AttributionError):
    pass


class AttributionConflictError(AttributionError):
    pass


class AttributionPermissionError(AttributionError):
    pass


class AttributionStoreUnavailableError(RuntimeError):
    """Persistence failed; the same operation may be retried by the caller."""
