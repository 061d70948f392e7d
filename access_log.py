import logging
import time
from typing import Optional

from starlette.requests import Request

ACCESS_LOGGER_NAME = 'access'


def level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if status_code >= 200:
        return logging.INFO
    return logging.DEBUG


def forwarded_ips(request: Request) -> str:
    ips = [
        value
        for value in (request.headers.get('x-forwarded-for'), request.headers.get('x-real-ip'))
        if value
    ]
    return ', '.join(ips) or '-'


def remote_addr(request: Request) -> str:
    if request.client is None:
        return '-'
    host, port = request.client
    if port is None:
        return host
    return f'{host}:{port}'


def protocol(request: Request) -> str:
    version = request.scope.get('http_version')
    if not version:
        return '-'
    return f'HTTP/{version}'


class AccessLogger:
    """Writes one line per handled package request.

    Format::

        <remote-addr> "<forwarded-ips>" <method> <url> <proto> <status> <seconds> "<referrer>" "<user-agent>"
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(ACCESS_LOGGER_NAME)

    def log(self, request: Request, status_code: int, started: float) -> None:
        duration = time.monotonic() - started
        self._logger.log(
            level_for_status(status_code),
            '%s "%s" %s %s %s %d %f "%s" "%s"',
            remote_addr(request),
            forwarded_ips(request),
            request.method,
            str(request.url),
            protocol(request),
            status_code,
            duration,
            request.headers.get('referer') or '-',
            request.headers.get('user-agent') or '-',
        )
