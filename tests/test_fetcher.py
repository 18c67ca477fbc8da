"""Unit tests for core/fetcher.py -- public IP and geo-IP lookups.

The shared requests.Session is patched so no test touches the network.
"""

from unittest.mock import MagicMock, patch

import requests

from core import fetcher


def _response(payload, status_error: Exception | None = None) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.side_effect = status_error
    return resp


class TestFetchPublicIp:
    def test_returns_ip(self):
        with patch.object(fetcher, "_session") as session:
            session.get.return_value = _response({"ip": "203.0.113.45"})
            assert fetcher.fetch_public_ip(timeout=3.0) == "203.0.113.45"
            _, kwargs = session.get.call_args
            assert kwargs["timeout"] == 3.0

    def test_timeout_returns_none(self):
        with patch.object(fetcher, "_session") as session:
            session.get.side_effect = requests.Timeout("slow")
            assert fetcher.fetch_public_ip() is None

    def test_bad_json_returns_none(self):
        with patch.object(fetcher, "_session") as session:
            resp = _response(None)
            resp.json.side_effect = ValueError("not json")
            session.get.return_value = resp
            assert fetcher.fetch_public_ip() is None


class TestFetchGeo:
    def test_maps_fields(self):
        payload = {
            "city": "Cebu City",
            "region": "Central Visayas",
            "country_name": "Philippines",
            "latitude": 10.3,
            "longitude": 123.9,
            "timezone": "Asia/Manila",
        }
        with patch.object(fetcher, "_session") as session:
            session.get.return_value = _response(payload)
            geo = fetcher.fetch_geo("8.8.8.8", timeout=2.0)
        assert geo == {
            "city": "Cebu City",
            "region": "Central Visayas",
            "country": "Philippines",
            "latitude": 10.3,
            "longitude": 123.9,
            "timezone": "Asia/Manila",
        }

    def test_service_error_payload_returns_none(self):
        with patch.object(fetcher, "_session") as session:
            session.get.return_value = _response({"error": True, "reason": "Reserved IP Address"})
            assert fetcher.fetch_geo("10.0.0.1") is None

    def test_http_error_returns_none(self):
        with patch.object(fetcher, "_session") as session:
            session.get.return_value = _response({}, status_error=requests.HTTPError("429"))
            assert fetcher.fetch_geo("8.8.8.8") is None

    def test_connection_error_returns_none(self):
        with patch.object(fetcher, "_session") as session:
            session.get.side_effect = requests.ConnectionError("unreachable")
            assert fetcher.fetch_geo("8.8.8.8") is None
