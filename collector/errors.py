# collector/errors.py


class CollectionError(Exception):
    """
    Base class for every failure the collection pipeline knows how to handle.

    Each error carries a ``kind`` string that ends up verbatim in
    CollectionRun.errors, so callers can tell a timeout from a layout change
    without parsing messages.
    """

    kind = "error"

    def __init__(self, message, kind=None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message


class FetchError(CollectionError):
    """Network boundary failure. Recoverable, retried with backoff."""

    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    CONNECTION = "connection"

    def __init__(self, kind, message, status_code=None):
        super().__init__(message, kind=kind)
        self.status_code = status_code


class ExtractionError(CollectionError):
    """The list container could not be located: most likely the layout drifted."""

    CONTAINER_NOT_FOUND = "container_not_found"

    def __init__(self, message, kind=CONTAINER_NOT_FOUND):
        super().__init__(message, kind=kind)


class NormalizationError(CollectionError):
    """A single record could not be canonicalized; only that record is dropped."""

    MISSING_REQUIRED_FIELD = "missing_required_field"
    UNPARSABLE_PRICE = "unparsable_price"

    def __init__(self, kind, message, field=None):
        super().__init__(message, kind=kind)
        self.field = field


class UnknownSourceError(CollectionError):
    kind = "unknown_source"

    def __init__(self, source_ids):
        self.source_ids = sorted(source_ids)
        super().__init__(f"Unknown source(s): {', '.join(self.source_ids)}")


class ConfigError(CollectionError):
    kind = "config"
