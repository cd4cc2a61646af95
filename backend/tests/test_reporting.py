"""
Tests for outbound report and backup notification delivery.
"""
from unittest.mock import MagicMock, patch

import requests

from auth import verify_auth_token
from services_reporting import USER_AGENT, Reporter, build_metadata
from tests.mock_helpers import make_config

REPORT = {"status": "ok", "server_name": "web-01"}


def _response(status_code=200, text="ok"):
    return MagicMock(status_code=status_code, text=text)


class TestSendReport:
    def test_posts_report_with_metadata_and_token(self):
        with patch("services_reporting.requests.post", return_value=_response()) as post:
            assert Reporter(make_config()).send_report(REPORT) is True

        args, kwargs = post.call_args
        assert args[0] == "https://monitor.example.com/api/health-report"
        assert kwargs["json"]["report"] == REPORT
        assert set(kwargs["json"]["metadata"]) == {
            "package_version", "python_version", "platform", "server_time", "timezone"
        }
        assert kwargs["timeout"] == 5.0

        headers = kwargs["headers"]
        assert headers["X-Server-Name"] == "web-01"
        assert headers["User-Agent"] == USER_AGENT
        assert headers["Content-Type"] == "application/json"
        token = headers["Authorization"].removeprefix("Bearer ")
        assert verify_auth_token(token, "web-01", "test-secret")

    def test_non_200_is_failure(self):
        with patch("services_reporting.requests.post", return_value=_response(500, "boom")):
            assert Reporter(make_config()).send_report(REPORT) is False

    def test_201_is_failure(self):
        with patch("services_reporting.requests.post", return_value=_response(201)):
            assert Reporter(make_config()).send_report(REPORT) is False

    def test_network_error_is_failure(self, caplog):
        with patch("services_reporting.requests.post", side_effect=requests.ConnectionError("refused")):
            assert Reporter(make_config()).send_report(REPORT) is False
        assert "refused" in caplog.text

    def test_missing_url_or_key_skips_request(self):
        with patch("services_reporting.requests.post") as post:
            assert Reporter(make_config(monitoring_url=None)).send_report(REPORT) is False
            assert Reporter(make_config(api_key=None)).send_report(REPORT) is False
        post.assert_not_called()


class TestBackupNotification:
    def test_falls_back_to_monitoring_url(self):
        with patch("services_reporting.requests.post", return_value=_response()) as post:
            assert Reporter(make_config()).send_backup_notification({"file_size": 10}) is True

        args, kwargs = post.call_args
        assert args[0] == "https://monitor.example.com/api/health-report"
        body = kwargs["json"]
        assert body["type"] == "backup_notification"
        assert body["server_name"] == "web-01"
        assert body["server_ip"] == "10.0.0.5"
        assert body["backup_info"] == {"file_size": 10}
        assert kwargs["headers"]["X-Message-Type"] == "backup"

    def test_dedicated_url(self):
        cfg = make_config(backup_notification_url="https://monitor.example.com/api/backups")
        with patch("services_reporting.requests.post", return_value=_response()) as post:
            Reporter(cfg).send_backup_notification({})
        assert post.call_args[0][0] == "https://monitor.example.com/api/backups"

    def test_failures_return_false(self):
        reporter = Reporter(make_config())
        with patch("services_reporting.requests.post", return_value=_response(503)):
            assert reporter.send_backup_notification({}) is False
        with patch("services_reporting.requests.post", side_effect=requests.Timeout("slow")):
            assert reporter.send_backup_notification({}) is False

    def test_no_url_at_all(self):
        cfg = make_config(monitoring_url=None, backup_notification_url=None)
        with patch("services_reporting.requests.post") as post:
            assert Reporter(cfg).send_backup_notification({}) is False
        post.assert_not_called()


def test_metadata_version():
    from config import PACKAGE_VERSION

    assert build_metadata()["package_version"] == PACKAGE_VERSION
