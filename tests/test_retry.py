"""Tests for the gateway read retry policy."""

import unittest
from unittest.mock import MagicMock, patch

import pytest
import requests

from sqmctl._config import TcMonitorConfig
from sqmctl._retry import FailureKind, MaxRetriesExceededError, Retrying, RetryPolicy
from sqmctl._tc_monitor import TcMonitorClient, TcMonitorError

REPORT = {"interfaces": [{"name": "Cable", "interface": "ifbeth2", "rate_mbps": 256.5, "status": "active"}]}


def http_error(status_code: int) -> requests.HTTPError:
    response = MagicMock()
    response.status_code = status_code
    return requests.HTTPError(f"{status_code} error", response=response)


def answer(status_code: int = 200, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if status_code >= 400:
        response.raise_for_status.side_effect = http_error(status_code)
    response.json.return_value = payload if payload is not None else REPORT
    return response


def gateway(*answers, **policy) -> TcMonitorClient:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = list(answers)
    return TcMonitorClient(host="192.168.1.1", session=session, retry_policy=RetryPolicy(**policy))


class TestFailureClassification:
    """Tests for RetryPolicy.classify()."""

    @pytest.mark.parametrize(
        ("exception", "kind"),
        [
            (requests.Timeout("read timed out"), FailureKind.TIMEOUT),
            (requests.ConnectTimeout("connect timed out"), FailureKind.TIMEOUT),
            (requests.ConnectionError("connection refused"), FailureKind.UNREACHABLE),
            (http_error(500), FailureKind.SERVER_ERROR),
            (http_error(503), FailureKind.SERVER_ERROR),
            (http_error(408), FailureKind.SERVER_ERROR),
            (http_error(404), FailureKind.REJECTED),
            (http_error(401), FailureKind.REJECTED),
            (requests.HTTPError("no response attached"), FailureKind.OTHER),
            (TcMonitorError("invalid JSON"), FailureKind.OTHER),
            (ValueError("bug"), FailureKind.OTHER),
        ],
    )
    def test_classify(self, exception, kind):
        assert RetryPolicy.classify(exception) is kind

    def test_only_transport_failures_are_transient(self):
        transient = {kind for kind in FailureKind if kind.is_transient}
        assert transient == {FailureKind.TIMEOUT, FailureKind.UNREACHABLE, FailureKind.SERVER_ERROR}


class TestRetryPolicy:
    """Tests for RetryPolicy limits."""

    def test_backoff_doubles_up_to_the_cap(self):
        policy = RetryPolicy(backoff_factor=0.5, max_backoff=3.0)
        assert [policy.backoff(n) for n in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_from_config(self):
        config = TcMonitorConfig(retry_max_retries=5, retry_backoff_factor=0.25, retry_max_total_wait=2.0)
        assert RetryPolicy.from_config(config) == RetryPolicy(max_retries=5, backoff_factor=0.25, max_total_wait=2.0)

    @pytest.mark.parametrize(
        ("field", "value"),
        [("max_retries", -1), ("backoff_factor", 0), ("max_backoff", 0), ("max_total_wait", -0.1)],
    )
    def test_invalid_limits_rejected(self, field, value):
        with pytest.raises(AssertionError, match=field):
            RetryPolicy(**{field: value})


@patch("sqmctl._retry.sleep_with_jitter")
class TestGatewayReads(unittest.TestCase):
    """Retry behaviour of TcMonitorClient reads."""

    def test_first_answer_wins(self, mock_sleep: MagicMock):
        client = gateway(answer())

        self.assertEqual(client.get_primary_wan_rate(), 256.5)
        mock_sleep.assert_not_called()

    def test_gateway_restarting(self, mock_sleep: MagicMock):
        """Refused connections and a 502 while the gateway boots are absorbed."""
        client = gateway(
            requests.ConnectionError("connection refused"),
            answer(502),
            answer(),
            backoff_factor=0.5,
        )

        self.assertEqual(client.get_rate("eth2"), 256.5)
        self.assertEqual(client.session.get.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [0.5, 1.0])

    def test_unreachable_gateway_gives_up_after_max_retries(self, mock_sleep: MagicMock):
        client = gateway(*[requests.Timeout("timed out")] * 3, max_retries=2)

        with self.assertRaises(MaxRetriesExceededError) as ctx:
            client.get_rates()

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception.last_exception, requests.Timeout)
        self.assertIn("timeout, timeout, timeout", str(ctx.exception))
        self.assertEqual(mock_sleep.call_count, 2)

    def test_wait_budget_stops_retries_early(self, mock_sleep: MagicMock):
        """Delays of 2s and 4s do not fit a 5s budget: the third request is never sent."""
        client = gateway(
            *[requests.ConnectionError("no route to host")] * 6,
            max_retries=5, backoff_factor=2.0, max_backoff=8.0, max_total_wait=5.0,
        )

        with self.assertRaises(MaxRetriesExceededError) as ctx:
            client.get_rates()

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertEqual(client.session.get.call_count, 2)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [2.0])

    def test_zero_budget_means_single_request(self, mock_sleep: MagicMock):
        client = gateway(requests.Timeout("timed out"), answer(), max_total_wait=0.0)

        with self.assertRaises(MaxRetriesExceededError):
            client.get_rates()

        self.assertEqual(client.session.get.call_count, 1)
        mock_sleep.assert_not_called()

    def test_retries_disabled_propagates_unwrapped(self, mock_sleep: MagicMock):
        client = gateway(requests.Timeout("timed out"), max_retries=0)

        with self.assertRaises(requests.Timeout):
            client.get_rates()

        mock_sleep.assert_not_called()

    def test_wrong_path_is_not_retried(self, mock_sleep: MagicMock):
        client = gateway(answer(404), answer())

        with self.assertRaises(requests.HTTPError):
            client.get_rates()

        self.assertEqual(client.session.get.call_count, 1)
        mock_sleep.assert_not_called()

    def test_broken_report_is_not_retried(self, mock_sleep: MagicMock):
        client = gateway(answer(payload=["ifbeth2", 256.5]), answer())

        with self.assertRaises(TcMonitorError):
            client.get_rates()

        self.assertEqual(client.session.get.call_count, 1)


@patch("sqmctl._retry.sleep_with_jitter")
class TestRetrying(unittest.TestCase):
    """Tests for the Retrying loop itself."""

    def test_records_failures_and_wait(self, mock_sleep: MagicMock):
        retrying = Retrying(RetryPolicy(max_retries=3, backoff_factor=1.0))
        errors = iter([requests.Timeout("slow"), http_error(503)])

        for attempt in retrying:
            with attempt:
                error = next(errors, None)
                if error is not None:
                    raise error
                break

        self.assertEqual(retrying.failures, [FailureKind.TIMEOUT, FailureKind.SERVER_ERROR])
        self.assertEqual(retrying.total_wait, 3.0)

    def test_is_last(self, mock_sleep: MagicMock):
        attempts = list(Retrying(RetryPolicy(max_retries=2)))
        self.assertEqual([a.is_last for a in attempts], [False, False, True])

    def test_keyboard_interrupt_propagates(self, mock_sleep: MagicMock):
        with self.assertRaises(KeyboardInterrupt):
            for attempt in Retrying():
                with attempt:
                    raise KeyboardInterrupt()

        mock_sleep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
