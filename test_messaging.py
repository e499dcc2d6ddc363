"""
WhatsApp gateways
"""
from unittest.mock import MagicMock, patch

import requests

from conftest import make_settings
from qrmenu.services.messaging import LogMessagingGateway, WhatsAppCloudGateway, build_gateway
from qrmenu.utils.phone import mask_phone


def _cloud():
    return WhatsAppCloudGateway("https://graph.test/v19.0", "12345", "secret-token", timeout_sec=3)


class TestLogGateway:

    async def test_records_message(self):
        gw = LogMessagingGateway()
        result = await gw.send_whatsapp_message("+5511987654321", "hello")
        assert result.success and result.provider == "log"
        assert gw.outbox == [("+5511987654321", "hello")]


class TestWhatsAppCloudGateway:

    async def test_posts_text_message(self):
        response = MagicMock(status_code=200)
        response.json.return_value = {"messages": [{"id": "wamid.1"}]}
        with patch("qrmenu.services.messaging.requests.post", return_value=response) as post:
            result = await _cloud().send_whatsapp_message("+5511987654321", "hi")
        assert result.success and result.message_id == "wamid.1"
        url = post.call_args.args[0]
        kwargs = post.call_args.kwargs
        assert url == "https://graph.test/v19.0/12345/messages"
        assert kwargs["json"]["to"] == "5511987654321"
        assert kwargs["json"]["text"]["body"] == "hi"
        assert kwargs["headers"]["Authorization"] == "Bearer secret-token"
        assert kwargs["timeout"] == 3

    async def test_http_error_is_reported_not_raised(self):
        response = MagicMock(status_code=401, text="bad token")
        with patch("qrmenu.services.messaging.requests.post", return_value=response):
            result = await _cloud().send_whatsapp_message("+5511987654321", "hi")
        assert result.success is False
        assert result.error_message == "HTTP 401"

    async def test_timeout_is_reported_not_raised(self):
        with patch("qrmenu.services.messaging.requests.post", side_effect=requests.exceptions.Timeout()):
            result = await _cloud().send_whatsapp_message("+5511987654321", "hi")
        assert result.success is False and result.error_message == "timeout"

    async def test_connection_error_is_reported_not_raised(self):
        with patch("qrmenu.services.messaging.requests.post",
                   side_effect=requests.exceptions.ConnectionError("refused")):
            result = await _cloud().send_whatsapp_message("+5511987654321", "hi")
        assert result.success is False


def test_build_gateway():
    assert isinstance(build_gateway(make_settings()), LogMessagingGateway)
    cloud = build_gateway(make_settings(whatsapp={"provider": "cloud", "phone_number_id": "1",
                                                  "access_token": "t"}))
    assert isinstance(cloud, WhatsAppCloudGateway)


def test_mask_phone():
    assert mask_phone("+5511987654321") == "+55119****4321"
