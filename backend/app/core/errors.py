from __future__ import annotations


class QuoteEngineError(Exception):
    """Base class for every caller-visible engine failure.

    `kind` is the stable error name surfaced to API clients; `context` carries
    the structured details (ids, states, quantities) for the response body.
    """

    kind = "QuoteEngineError"
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.message}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class NotFound(QuoteEngineError):
    kind = "NotFound"
    status_code = 404


class IllegalTransition(QuoteEngineError):
    kind = "IllegalTransition"
    status_code = 409

    def __init__(self, from_status: str, event: str):
        super().__init__(f"Cannot {event} a quote in status '{from_status}'", from_status=from_status, event=event)
        self.from_status = from_status
        self.event = event


class InvalidState(QuoteEngineError):
    kind = "InvalidState"
    status_code = 409


class NotConvertible(QuoteEngineError):
    kind = "NotConvertible"
    status_code = 409


class EmptyQuote(QuoteEngineError):
    kind = "EmptyQuote"
    status_code = 422


class DivisionByZero(QuoteEngineError):
    kind = "DivisionByZero"
    status_code = 422


class ValidationFailed(QuoteEngineError):
    kind = "ValidationFailed"
    status_code = 422


class DownstreamFailure(QuoteEngineError):
    kind = "DownstreamFailure"
    status_code = 502


class DeadlineExceeded(QuoteEngineError):
    kind = "DeadlineExceeded"
    status_code = 504
