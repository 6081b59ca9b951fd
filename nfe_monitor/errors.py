from typing import Any, Optional


class NfeMonitorError(Exception):
    """Base error; carries the HTTP status the façade answers with."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConnectivityError(NfeMonitorError):
    # store unreachable
    status_code = 503


class QueryError(NfeMonitorError):
    # malformed statement or constraint violation
    status_code = 500


class InvalidKeyError(NfeMonitorError):
    status_code = 400


class UpstreamError(NfeMonitorError):
    # transport failure or non-success answer from SEFAZ
    status_code = 502


class ParseError(NfeMonitorError):
    status_code = 500


class NotFoundError(NfeMonitorError):
    status_code = 404


class SimulationDisabledError(NfeMonitorError):
    # monitor probes the real endpoint
    status_code = 404


class InvalidPaginationError(NfeMonitorError):
    status_code = 400
