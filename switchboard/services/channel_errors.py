from typing import Optional

import httpx


class ChannelSendError(Exception):
    """A send through a push API or live session failed.

    ``retryable`` separates transient problems (network, timeout, throttling,
    upstream 5xx) from permanent ones such as an invalid recipient.
    """

    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def send_error_from_httpx(exc: httpx.HTTPError, *, channel: str) -> ChannelSendError:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = exc.response.text[:500]
        return ChannelSendError(
            f"{channel} rejected send: HTTP {status} {detail}",
            retryable=is_retryable_status(status),
            status_code=status,
        )
    if isinstance(exc, httpx.TimeoutException):
        return ChannelSendError(f"{channel} timed out", retryable=True)
    return ChannelSendError(f"{channel} unreachable: {exc}", retryable=True)
