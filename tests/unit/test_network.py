"""Tests for NetworkMonitor transitions and the HEAD probe."""
from unittest.mock import MagicMock

import httpx
import pytest

from sonder.sync.network import NetworkMonitor

PROBE_URL = "https://example.supabase.co/rest/v1/"


def _transport(handler):
    return httpx.MockTransport(handler)


class TestSetOnline:
    def test_listener_fires_on_transition(self):
        monitor = NetworkMonitor()
        listener = MagicMock()
        monitor.add_listener(listener)
        monitor.set_online(False)
        monitor.set_online(True)
        assert [c.args for c in listener.call_args_list] == [(False,), (True,)]

    def test_no_event_without_change(self):
        monitor = NetworkMonitor()
        listener = MagicMock()
        monitor.add_listener(listener)
        monitor.set_online(True)
        listener.assert_not_called()


class TestProbe:
    @pytest.mark.asyncio
    async def test_any_response_means_online(self):
        seen = []

        def handler(request):
            seen.append(request.method)
            return httpx.Response(401)

        monitor = NetworkMonitor(PROBE_URL, online=False, transport=_transport(handler))
        assert await monitor.probe() is True
        assert monitor.is_online
        assert seen == ["HEAD"]

    @pytest.mark.asyncio
    async def test_connect_error_means_offline(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        monitor = NetworkMonitor(PROBE_URL, transport=_transport(handler))
        assert await monitor.probe() is False
        assert not monitor.is_online

    @pytest.mark.asyncio
    async def test_without_url_keeps_state(self):
        monitor = NetworkMonitor(online=False)
        assert await monitor.probe() is False
