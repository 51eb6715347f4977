# src/exceptions.py


class PipelineError(Exception):
    """Base error. `status_code` is what the read APIs answer with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CallerError(PipelineError):
    status_code = 400


class InvalidQueryError(CallerError):
    def __init__(self, message: str = 'Query parameter "q" is required'):
        super().__init__(message)


class InvalidContentTypeError(CallerError):
    def __init__(self, message: str = "Invalid content type"):
        super().__init__(message)


class InvalidLimitError(CallerError):
    pass


class ContentNotFoundError(PipelineError):
    status_code = 404

    def __init__(self, message: str = "Content not found"):
        super().__init__(message)


class UpstreamUnavailableError(PipelineError):
    """Broker or index unreachable for an operation that needs it."""

    status_code = 500


class StoreUnavailableError(UpstreamUnavailableError):
    """The derived store rejected or could not receive a write."""


class EnvelopeDecodeError(PipelineError):
    status_code = 400


class InvalidSearchRequestError(CallerError):
    """The index refused a query as malformed, e.g. a result window past its maximum."""


class DocumentRejectedError(PipelineError):
    """The index refused one document. The store itself is fine."""
