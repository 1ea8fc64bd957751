import logging
import re

# Matches the request line and status of both runserver and gunicorn access logs:
#   "GET /healthz HTTP/1.1" 200 12
_ACCESS_LINE = re.compile(r'"[A-Z]+ (?P<path>\S+) HTTP/[\d.]+" (?P<status>\d{3})\b')

HEALTH_PATHS = frozenset({"/healthz", "/healthz/", "/readyz", "/readyz/"})


class HealthEndpointFilter(logging.Filter):
    """Drop successful probe requests from access logs; failures still show."""

    def filter(self, record: logging.LogRecord) -> bool:
        match = _ACCESS_LINE.search(record.getMessage())
        if match is None:
            return True
        path = match.group("path").split("?", 1)[0]
        if path not in HEALTH_PATHS:
            return True
        return not match.group("status").startswith("2")
