"""Tests for the tc-monitor client."""

import json
import unittest
from unittest.mock import MagicMock, patch

import pytest
import requests

from sqmctl._config import ConfigValidationError, TcMonitorConfig
from sqmctl._retry import MaxRetriesExceededError
from sqmctl._tc_monitor import InterfaceRate, TcMonitorClient, TcMonitorError, parse_rates

INTERFACES_PAYLOAD = {
    "interfaces": [
        {"name": "Fiber", "interface": "ifbeth8", "rate_mbps": 0, "rate_raw": "0bit", "status": "inactive"},
        {"name": "Cable", "interface": "ifbeth2", "rate_mbps": 256.5, "rate_raw": "256500Kbit", "status": "active"},
    ]
}

LEGACY_PAYLOAD = {
    "wan1": {"name": "Cable", "interface": "ifbeth2", "rate_mbps": 240.0, "rate_raw": "240Mbit"},
    "wan2": {"name": "Starlink", "interface": "ifbeth0", "rate_mbps": 0},
}


def make_response(payload=None, status_code: int = 200, text: str | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if status_code >= 400:
        error = requests.HTTPError(f"{status_code} error")
        error.response = response
        response.raise_for_status.side_effect = error
    if text is not None:
        response.json.side_effect = json.JSONDecodeError("Expecting value", text, 0)
    else:
        response.json.return_value = payload
    return response


def make_client(*responses, **kwargs) -> TcMonitorClient:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = list(responses)
    return TcMonitorClient(host="192.168.1.1", session=session, **kwargs)


class TestInterfaceRate:
    """Tests for InterfaceRate.from_dict()."""

    def test_full_entry(self):
        rate = InterfaceRate.from_dict(INTERFACES_PAYLOAD["interfaces"][1])
        assert rate == InterfaceRate("Cable", "ifbeth2", 256.5, "256500Kbit", "active")
        assert rate.is_active is True

    def test_status_is_case_insensitive(self):
        assert InterfaceRate.from_dict({"rate_mbps": 1, "status": "ACTIVE"}).is_active is True

    def test_defaults(self):
        rate = InterfaceRate.from_dict({})
        assert rate.rate_mbps == 0.0
        assert rate.rate_raw is None
        assert rate.status == "unknown"
        assert rate.is_active is False

    @pytest.mark.parametrize("entry", [[], "eth2", {"rate_mbps": "fast"}, {"rate_mbps": "inf"}])
    def test_invalid_entries(self, entry):
        with pytest.raises(TcMonitorError):
            InterfaceRate.from_dict(entry)


class TestParseRates:
    """Tests for parse_rates()."""

    def test_interfaces_list(self):
        rates = parse_rates(INTERFACES_PAYLOAD)
        assert [r.interface for r in rates] == ["ifbeth8", "ifbeth2"]
        assert [r.is_active for r in rates] == [False, True]

    def test_legacy_status_derived_from_rate(self):
        rates = parse_rates(LEGACY_PAYLOAD)
        assert [(r.name, r.status) for r in rates] == [("Cable", "active"), ("Starlink", "inactive")]

    def test_legacy_single_wan(self):
        rates = parse_rates({"wan1": LEGACY_PAYLOAD["wan1"]})
        assert len(rates) == 1
        assert rates[0].rate_mbps == 240.0

    def test_empty_interfaces_falls_back_to_legacy(self):
        rates = parse_rates({"interfaces": [], **LEGACY_PAYLOAD})
        assert len(rates) == 2

    def test_empty_report(self):
        assert parse_rates({}) == []

    @pytest.mark.parametrize("payload", [None, [], "ok", {"interfaces": {"name": "Cable"}}])
    def test_not_a_report(self, payload):
        with pytest.raises(TcMonitorError):
            parse_rates(payload)


class TestTcMonitorClient(unittest.TestCase):
    """Tests for TcMonitorClient."""

    def test_base_url(self):
        client = TcMonitorClient(host="gw.lan", port=9000)
        self.assertEqual(client.base_url, "http://gw.lan:9000/")

    def test_from_config(self):
        config = TcMonitorConfig(enabled=True, host="192.168.1.1", request_timeout=2.0, retry_max_retries=1)
        client = TcMonitorClient.from_config(config)
        self.assertEqual(client.base_url, "http://192.168.1.1:8088/")
        self.assertEqual(client.timeout, 2.0)
        self.assertEqual(client.max_retries, 1)

    def test_from_invalid_config(self):
        with self.assertRaises(ConfigValidationError):
            TcMonitorClient.from_config(TcMonitorConfig(enabled=True))

    def test_get_rates(self):
        client = make_client(make_response(INTERFACES_PAYLOAD), timeout=3.0)

        rates = client.get_rates()

        self.assertEqual(len(rates), 2)
        client.session.get.assert_called_once_with("http://192.168.1.1:8088/", timeout=3.0)

    def test_get_primary_wan_rate(self):
        self.assertEqual(make_client(make_response(INTERFACES_PAYLOAD)).get_primary_wan_rate(), 256.5)

    def test_get_primary_wan_rate_without_active_interface(self):
        payload = {"interfaces": [INTERFACES_PAYLOAD["interfaces"][0]]}
        self.assertIsNone(make_client(make_response(payload)).get_primary_wan_rate())

    def test_get_rate_by_interface_or_ifb_device(self):
        self.assertEqual(make_client(make_response(INTERFACES_PAYLOAD)).get_rate("eth2"), 256.5)
        self.assertEqual(make_client(make_response(INTERFACES_PAYLOAD)).get_rate("ifbeth2"), 256.5)
        self.assertIsNone(make_client(make_response(INTERFACES_PAYLOAD)).get_rate("eth9"))

    @patch("sqmctl._retry.sleep_with_jitter")
    def test_retries_transient_errors(self, mock_sleep: MagicMock):
        client = make_client(
            requests.ConnectionError("refused"),
            make_response(status_code=503),
            make_response(LEGACY_PAYLOAD),
        )

        self.assertEqual(client.get_primary_wan_rate(), 240.0)
        self.assertEqual(client.session.get.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch("sqmctl._retry.sleep_with_jitter")
    def test_max_retries_exceeded(self, mock_sleep: MagicMock):
        client = make_client(*[requests.Timeout("timed out")] * 3, max_retries=2)

        with self.assertRaises(MaxRetriesExceededError) as ctx:
            client.get_rates()

        self.assertIsInstance(ctx.exception.last_exception, requests.Timeout)
        self.assertEqual(client.session.get.call_count, 3)

    def test_client_errors_are_not_retried(self):
        client = make_client(make_response(status_code=404))

        with self.assertRaises(requests.HTTPError):
            client.get_rates()

        self.assertEqual(client.session.get.call_count, 1)

    def test_invalid_json_is_not_retried(self):
        client = make_client(make_response(text="<html>"))

        with self.assertRaises(TcMonitorError):
            client.get_rates()

        self.assertEqual(client.session.get.call_count, 1)

    def test_invalid_report_raises(self):
        client = make_client(make_response(["ifbeth2", 256.5]))

        with self.assertRaises(TcMonitorError):
            client.get_rates()


if __name__ == "__main__":
    unittest.main()
