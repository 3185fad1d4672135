"""Error taxonomy for the relay.

Every error raised across module boundaries derives from :class:`RelayError`
so the HTTP layer can map it to a status code and a machine-readable code in
one place. Components never retry or suppress these errors themselves.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors.

    Attributes:
        code: machine readable error code (e.g. ``"STORE_UNAVAILABLE"``).
        message: human readable description.
        http_status: status code used when the error is reported over HTTP.
        extra: additional context such as the session id or upstream status.
    """

    code = "RELAY_ERROR"
    http_status = 500

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)


class StoreUnavailable(RelayError):
    """The conversation store could not be read or written."""

    code = "STORE_UNAVAILABLE"
    http_status = 503


class UpstreamRejected(RelayError):
    """The generation backend did not honour the streaming contract."""

    code = "UPSTREAM_REJECTED"
    http_status = 502


class TranscodeError(RelayError):
    """An upstream frame could not be decoded."""

    code = "TRANSCODE_ERROR"
    http_status = 502


class ClientAborted(RelayError):
    """The client went away or cancelled the request."""

    code = "CLIENT_ABORTED"
    http_status = 499
