from unittest.mock import patch

from django.test import TestCase


class HealthViewsTests(TestCase):
    def test_healthz_returns_ok(self) -> None:
        for path in ("/healthz", "/healthz/"):
            resp = self.client.get(path)
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json(), {"status": "ok"})

    def test_readyz_checks_database_and_credential_cache(self) -> None:
        resp = self.client.get("/readyz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp["Content-Type"], "application/json")
        self.assertEqual(resp.json(), {"status": "ready", "database": "ok", "credential_cache": "ok"})

    def test_readyz_returns_503_when_db_unavailable(self) -> None:
        with patch("django.db.connection.ensure_connection", side_effect=RuntimeError("db down")):
            with self.assertLogs("voting.views_health", level="ERROR"):
                resp = self.client.get("/readyz")

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json(), {"status": "not ready", "error": "db down"})

    def test_readyz_returns_503_when_credential_cache_unavailable(self) -> None:
        with patch("voting.views_health.caches") as caches:
            caches.__getitem__.return_value.get.side_effect = ConnectionError("cache down")
            with self.assertLogs("voting.views_health", level="ERROR"):
                resp = self.client.get("/readyz/")

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json(), {"status": "not ready", "error": "cache down"})

    def test_probes_reject_post(self) -> None:
        self.assertEqual(self.client.post("/healthz").status_code, 405)
