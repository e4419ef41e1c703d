"""
Bridge transport client and Redis job lock tests (network mocked).
"""
import pytest
import sys
import os
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests
from redis.exceptions import RedisError

from core import locks
from core.exceptions import TransientDeliveryError
from services.transport import HttpBridgeTransport


def _response(status_code=200, json_data=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data or {}
    response.text = text
    return response


class TestHttpBridgeTransport:
    def test_connected(self):
        transport = HttpBridgeTransport(base_url="http://bridge:3001/", token="t0k")
        with patch("services.transport.requests.get", return_value=_response(json_data={"connected": True})) as get:
            assert transport.is_connected() is True

        url = get.call_args.args[0]
        assert url == "http://bridge:3001/status"
        assert get.call_args.kwargs["headers"]["Authorization"] == "Bearer t0k"

    @pytest.mark.parametrize("response", [
        _response(json_data={"connected": False}),
        _response(status_code=503),
    ])
    def test_not_connected(self, response):
        with patch("services.transport.requests.get", return_value=response):
            assert HttpBridgeTransport(base_url="http://bridge").is_connected() is False

    def test_status_network_error(self):
        with patch("services.transport.requests.get", side_effect=requests.ConnectionError("refused")):
            assert HttpBridgeTransport(base_url="http://bridge").is_connected() is False

    def test_send_posts_message(self):
        with patch("services.transport.requests.post", return_value=_response(status_code=201)) as post:
            HttpBridgeTransport(base_url="http://bridge").send("123@s.whatsapp.net", "oi")

        assert post.call_args.args[0] == "http://bridge/messages"
        assert post.call_args.kwargs["json"] == {"jid": "123@s.whatsapp.net", "text": "oi"}

    def test_send_rejected(self):
        with patch("services.transport.requests.post", return_value=_response(status_code=500, text="boom")):
            with pytest.raises(TransientDeliveryError):
                HttpBridgeTransport(base_url="http://bridge").send("123@s.whatsapp.net", "oi")

    def test_send_network_error(self):
        with patch("services.transport.requests.post", side_effect=requests.Timeout("slow")):
            with pytest.raises(TransientDeliveryError):
                HttpBridgeTransport(base_url="http://bridge").send("123@s.whatsapp.net", "oi")


class TestJobLock:
    def test_acquire_and_release(self):
        client = MagicMock()
        client.set.return_value = True
        with patch("core.locks.get_redis_client", return_value=client):
            lock = locks.JobLock("outbox", ttl_s=60)
            assert lock.acquire() is True
            lock.release()

        client.set.assert_called_once_with("engagement_lock:outbox", "1", nx=True, ex=60)
        client.delete.assert_called_once_with("engagement_lock:outbox")

    def test_held_elsewhere(self):
        client = MagicMock()
        client.set.return_value = None
        with patch("core.locks.get_redis_client", return_value=client):
            assert locks.acquire_job_lock("outbox", 60) is False

    def test_fails_open_without_redis(self):
        with patch("core.locks.get_redis_client", return_value=None):
            assert locks.acquire_job_lock("outbox", 60) is True
            locks.release_job_lock("outbox")

    def test_fails_open_on_redis_error(self):
        client = MagicMock()
        client.set.side_effect = RedisError("READONLY")
        with patch("core.locks.get_redis_client", return_value=client):
            assert locks.acquire_job_lock("outbox", 60) is True
