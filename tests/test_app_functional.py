import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from filedrop.app import UploadConcurrencyLimiter, create_app, get_state, human_filesize
from filedrop.config import DAY_MS

BASE_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now=BASE_MS):
        self.now = now

    def __call__(self):
        return self.now


class FiledropAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        self.env = mock.patch.dict(os.environ, {}, clear=False)
        self.env.start()
        for key in list(os.environ):
            if key.startswith("FILEDROP_"):
                os.environ.pop(key)
        self.clock = FakeClock()
        self._build_app()

    def tearDown(self):
        self.env.stop()
        self.storage_dir.cleanup()

    def _build_app(self, **overrides):
        config_overrides = {"scheduler_enabled": False, "rate_limit_enabled": False}
        config_overrides.update(overrides)
        self.app = create_app(config_overrides, storage_root=self.root, clock=self.clock)
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()
        with self.app.app_context():
            self.state = get_state()

    def _upload(self, content=b"hello world", filename="sample.txt", **form):
        data = {"file": (io.BytesIO(content), filename)}
        data.update(form)
        return self.client.post(
            "/api/files/upload", data=data, content_type="multipart/form-data"
        )

    def test_upload_verify_and_download_flow(self):
        response = self._upload(expiryDays="3", description="report", tags="q3")
        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertTrue(payload["success"])
        data = payload["data"]
        code = data["pickup_code"]
        self.assertEqual(len(code), 6)
        self.assertEqual(data["name"], "sample.txt")
        self.assertEqual(data["size"], 11)
        self.assertEqual(data["mime_type"], "text/plain")
        self.assertEqual(data["expires_at"], BASE_MS + 3 * DAY_MS)
        self.assertEqual(data["expires_in"], "3d 0h")
        self.assertNotIn("stored_name", data)

        verify = self.client.get(f"/api/files/verify/{code.lower()}")
        self.assertEqual(verify.status_code, 200)
        self.assertEqual(verify.get_json()["data"]["description"], "report")
        self.assertEqual(verify.get_json()["data"]["download_count"], 0)

        info = self.client.get(f"/api/files/info/{code}")
        self.assertEqual(info.status_code, 200)

        download = self.client.get(f"/api/files/download/{code}")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b"hello world")
        self.assertIn("attachment", download.headers.get("Content-Disposition", ""))
        self.assertIn("sample.txt", download.headers.get("Content-Disposition", ""))
        self.assertIn("no-store", download.headers.get("Cache-Control", ""))
        download.close()

        record = self.state.index.get(code)
        self.assertEqual(record.download_count, 1)
        self.assertEqual(record.last_download_source, "127.0.0.1")
        self.assertEqual(record.uploader_source, "127.0.0.1")

    def test_upload_without_file_is_rejected(self):
        response = self.client.post(
            "/api/files/upload", data={}, content_type="multipart/form-data"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "NO_FILE")

    def test_invalid_metadata_is_rejected(self):
        response = self._upload(description="x" * 501)
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload["code"], "VALIDATION_ERROR")
        self.assertEqual(payload["field"], "description")
        self.assertEqual(list(self.state.files.iter_files()), [])

    def test_oversized_upload_returns_413(self):
        self._build_app(max_upload_size_mb=1)
        response = self._upload(content=b"x" * (2 * 1024 * 1024))
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json()["code"], "FILE_TOO_LARGE")

    def test_invalid_and_unknown_codes(self):
        invalid = self.client.get("/api/files/verify/ab-12")
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.get_json()["code"], "INVALID_CODE_FORMAT")

        missing = self.client.get("/api/files/verify/ZZZZZZ")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["code"], "NOT_FOUND")

        download = self.client.get("/api/files/download/ZZZZZZ")
        self.assertEqual(download.status_code, 404)

    def test_expired_code_returns_410(self):
        code = self._upload(expiryDays="1").get_json()["data"]["pickup_code"]
        self.clock.now = BASE_MS + 25 * 60 * 60 * 1000

        response = self.client.get(f"/api/files/verify/{code}")
        self.assertEqual(response.status_code, 410)
        payload = response.get_json()
        self.assertEqual(payload["code"], "EXPIRED")
        self.assertEqual(payload["expired_at"], BASE_MS + DAY_MS)

        download = self.client.get(f"/api/files/download/{code}")
        self.assertEqual(download.status_code, 410)

    def test_missing_file_is_reported_as_not_found_and_purged(self):
        code = self._upload().get_json()["data"]["pickup_code"]
        record = self.state.index.get(code)
        self.state.files.delete(record.stored_name)

        first = self.client.get(f"/api/files/download/{code}")
        self.assertEqual(first.status_code, 404)
        self.assertEqual(first.get_json()["code"], "NOT_FOUND")
        self.assertIsNone(self.state.index.get(code))

        second = self.client.get(f"/api/files/verify/{code}")
        self.assertEqual(second.status_code, 404)

    def test_admin_delete_requires_configured_key(self):
        code = self._upload().get_json()["data"]["pickup_code"]
        response = self.client.delete(
            f"/api/admin/files/{code}", headers={"X-Admin-Key": "anything"}
        )
        self.assertEqual(response.status_code, 403)

        self._build_app(admin_key="s3cret")
        wrong = self.client.delete(f"/api/admin/files/{code}", headers={"X-Admin-Key": "nope"})
        self.assertEqual(wrong.status_code, 403)

        deleted = self.client.delete(f"/api/admin/files/{code}", headers={"X-Admin-Key": "s3cret"})
        self.assertEqual(deleted.status_code, 200)
        self.assertTrue(deleted.get_json()["success"])
        self.assertEqual(self.client.get(f"/api/files/verify/{code}").status_code, 404)

        again = self.client.delete(f"/api/admin/files/{code}", headers={"X-Admin-Key": "s3cret"})
        self.assertEqual(again.status_code, 404)

    def test_stats_endpoint(self):
        self._upload(content=b"abc")
        response = self.client.get("/api/system/stats")
        self.assertEqual(response.status_code, 200)
        data = response.get_json()["data"]
        self.assertEqual(data["total_records"], 1)
        self.assertEqual(data["total_bytes_live"], 3)

    def test_health_endpoint_reports_checks(self):
        response = self.client.get("/health")
        self.assertIn(response.status_code, (200, 503))
        payload = response.get_json()
        self.assertEqual(payload["checks"]["index"], "ok")
        self.assertEqual(payload["checks"]["uploads_writable"], "ok")
        self.assertFalse(payload["checks"]["scheduler"]["running"])

    def test_request_id_is_echoed_and_security_headers_set(self):
        response = self.client.get("/api/system/stats", headers={"X-Request-ID": "abc-123"})
        self.assertEqual(response.headers["X-Request-ID"], "abc-123")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")

    def test_upload_rejected_when_no_slot_available(self):
        with mock.patch.object(self.state.upload_limiter, "acquire", return_value=False):
            response = self._upload()
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()["code"], "TOO_MANY_UPLOADS")

    def test_verify_rate_limit(self):
        self._build_app(rate_limit_enabled=True, verify_rate_limit="2 per minute")
        statuses = [self.client.get("/api/files/verify/ZZZZZZ").status_code for _ in range(3)]
        self.assertEqual(statuses, [404, 404, 429])

    def test_sweep_command_reports_json(self):
        self._upload(expiryDays="1")
        self.clock.now = BASE_MS + 2 * DAY_MS
        runner = self.app.test_cli_runner()

        result = runner.invoke(args=["sweep", "--deep"])

        self.assertEqual(result.exit_code, 0, result.output)
        reports = json.loads(result.stdout)
        self.assertEqual(reports["expired"]["removed"], 1)
        self.assertIn("dangling", reports)

    def test_restore_index_command(self):
        self._upload()
        self._upload(filename="second.txt")
        self.state.index.index_path.write_text("corrupt", encoding="utf-8")
        self.assertEqual(self.client.get("/api/system/stats").status_code, 500)

        result = self.app.test_cli_runner().invoke(args=["restore-index"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Restored 1 records", result.output)
        self.assertEqual(self.client.get("/api/system/stats").status_code, 200)

    def test_file_vanishing_during_send_purges_record(self):
        code = self._upload().get_json()["data"]["pickup_code"]
        record = self.state.index.get(code)

        def vanish(*args, **kwargs):
            self.state.files.delete(record.stored_name)
            raise FileNotFoundError(record.stored_name)

        with mock.patch("filedrop.app.send_file", side_effect=vanish):
            response = self.client.get(f"/api/files/download/{code}")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["code"], "NOT_FOUND")
        self.assertIsNone(self.state.index.get(code))

    def test_lifecycle_logs_carry_request_id(self):
        with self.assertLogs("filedrop.lifecycle", level="INFO") as logs:
            self.client.get("/api/system/stats", headers={"X-Request-ID": "trace-42"})
        self.assertTrue(
            any("request_id=trace-42 request_completed" in line for line in logs.output)
        )


class HelperTests(unittest.TestCase):
    def test_human_filesize(self):
        self.assertEqual(human_filesize(0), "0 B")
        self.assertEqual(human_filesize(512), "512 B")
        self.assertEqual(human_filesize(1536), "1.5 KB")

    def test_upload_limiter_caps_active_uploads(self):
        limiter = UploadConcurrencyLimiter(2)
        self.assertTrue(limiter.acquire())
        self.assertTrue(limiter.acquire())
        self.assertFalse(limiter.acquire())
        limiter.release()
        self.assertEqual(limiter.available_slots(), 1)


if __name__ == "__main__":
    unittest.main()
