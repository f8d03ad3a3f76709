"""Gateway HTTP client and callback signatures."""

from unittest.mock import MagicMock

import pytest
import requests

from billing_config.schema import GatewaySettings
from billing_kernel.exceptions import GatewayError, GatewayUnavailableError
from billing_services.gateway import RazorpayGateway, sign_payment, signature_matches

SECRET = "s3cret"


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f"{status_code} error", response=response
        )
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def gateway_settings():
    return GatewaySettings(key_id="rzp_test_key", key_secret=SECRET, timeout_seconds=5.0)


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


class TestSignatures:
    def test_known_vector(self):
        # hmac.new(b"s3cret", b"order_1|pay_1", sha256)
        signature = sign_payment(SECRET, "order_1", "pay_1")
        assert len(signature) == 64
        assert signature_matches(SECRET, "order_1", "pay_1", signature)

    @pytest.mark.parametrize(
        "order_id, payment_id",
        [("order_2", "pay_1"), ("order_1", "pay_2")],
    )
    def test_any_field_change_fails(self, order_id, payment_id):
        signature = sign_payment(SECRET, "order_1", "pay_1")
        assert not signature_matches(SECRET, order_id, payment_id, signature)

    def test_wrong_secret(self):
        signature = sign_payment("other", "order_1", "pay_1")
        assert not signature_matches(SECRET, "order_1", "pay_1", signature)

    def test_empty_signature(self):
        assert not signature_matches(SECRET, "order_1", "pay_1", None)


class TestRazorpayGateway:
    def test_requires_secret(self):
        with pytest.raises(GatewayError):
            RazorpayGateway(GatewaySettings(key_id="k", key_secret=""))

    def test_create_order(self, gateway_settings, http):
        http.post.return_value = _response(
            body={"id": "order_ABC", "amount": 106200, "currency": "INR", "receipt": "SUB-000001"}
        )
        gateway = RazorpayGateway(gateway_settings, session=http)

        order = gateway.create_order(106200, "INR", receipt="SUB-000001", notes={"k": "v"})

        assert order.order_id == "order_ABC"
        assert order.amount_minor_units == 106200
        http.post.assert_called_once_with(
            "https://api.razorpay.com/v1/orders",
            json={"amount": 106200, "currency": "INR", "receipt": "SUB-000001", "notes": {"k": "v"}},
            auth=("rzp_test_key", SECRET),
            timeout=5.0,
        )

    def test_timeout_is_retryable(self, gateway_settings, http, captured_logs):
        http.post.side_effect = requests.Timeout("read timed out")
        gateway = RazorpayGateway(gateway_settings, session=http)

        with pytest.raises(GatewayUnavailableError) as exc_info:
            gateway.create_order(100, "INR")
        assert exc_info.value.retryable is True
        assert any(r["message"] == "gateway_unreachable" for r in captured_logs())

    def test_connection_error(self, gateway_settings, http):
        http.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(GatewayUnavailableError):
            RazorpayGateway(gateway_settings, session=http).create_order(100, "INR")

    def test_http_error(self, gateway_settings, http):
        http.post.return_value = _response(status_code=400)
        with pytest.raises(GatewayError) as exc_info:
            RazorpayGateway(gateway_settings, session=http).create_order(100, "INR")
        assert not isinstance(exc_info.value, GatewayUnavailableError)

    def test_missing_order_id(self, gateway_settings, http):
        http.post.return_value = _response(body={"status": "created"})
        with pytest.raises(GatewayError):
            RazorpayGateway(gateway_settings, session=http).create_order(100, "INR")

    def test_verify_signature(self, gateway_settings, http):
        gateway = RazorpayGateway(gateway_settings, session=http)
        assert gateway.verify_signature("o", "p", sign_payment(SECRET, "o", "p"))
        assert not gateway.verify_signature("o", "p", "bad")
