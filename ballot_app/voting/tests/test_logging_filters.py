import logging

from django.test import SimpleTestCase

from config.logging_filters import HealthEndpointFilter


def access_record(msg: str, *, name: str = "django.server") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class LoggingFilterTests(SimpleTestCase):
    def test_health_endpoint_filter(self) -> None:
        filt = HealthEndpointFilter()

        self.assertFalse(filt.filter(access_record('"GET /healthz HTTP/1.1" 200 12')))
        self.assertTrue(filt.filter(access_record('"GET /healthz HTTP/1.1" 503 12')))
        self.assertTrue(filt.filter(access_record('"GET /api/elections/available HTTP/1.1" 200 12')))

    def test_health_endpoint_filter_handles_gunicorn_format(self) -> None:
        filt = HealthEndpointFilter()

        record = access_record(
            '- - - [27/Jan/2026:10:49:08 +0000] "GET /readyz HTTP/1.1" 200 37 3ms "Go-http-client/1.1"',
            name="gunicorn.access",
        )
        self.assertFalse(filt.filter(record))

    def test_query_string_and_trailing_slash(self) -> None:
        filt = HealthEndpointFilter()

        self.assertFalse(filt.filter(access_record('"GET /readyz/?probe=k8s HTTP/1.1" 200 37')))
        self.assertTrue(filt.filter(access_record('"GET /readyz-extra HTTP/1.1" 200 37')))

    def test_paths_that_merely_mention_health_are_kept(self) -> None:
        filt = HealthEndpointFilter()

        self.assertTrue(filt.filter(access_record('"GET /api/elections/?next=/healthz HTTP/1.1" 200 37')))
        self.assertTrue(filt.filter(access_record("Election sweep finished: activated=0 /healthz")))
