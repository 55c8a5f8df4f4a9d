"""
Tests for transport.http_channel module.
"""

import pytest
from aiohttp import web

from transport.http_channel import HTTPProvisioningChannel
from transport.models import Credentials, FailureReason, TransportOutcome

from fakes import RecordingSleep, serve

HOME = Credentials("HomeNet", "pw1234")


def hotspot_app(saves: bool = True, settings_status: int = 302):
    """Controller setup page that remembers the submitted network name."""
    state = {'ssid': "", 'forms': [], 'reboots': 0}

    async def settings(request):
        form = await request.post()
        state['forms'].append(dict(form))
        if saves:
            state['ssid'] = form['CS']
        if settings_status >= 400:
            return web.Response(status=settings_status)
        return web.Response(status=settings_status, headers={'Location': '/'})

    async def cfg(request):
        return web.json_response({'nw': {'ins': [{'ssid': state['ssid'], 'pskl': 0}]}})

    async def json_state(request):
        body = await request.json()
        if body.get('rb'):
            state['reboots'] += 1
        return web.json_response({'success': True})

    app = web.Application()
    app.router.add_post('/settings/wifi', settings)
    app.router.add_get('/json/cfg', cfg)
    app.router.add_post('/json/state', json_state)
    return app, state


def make_channel(base_url: str, sleep=None) -> HTTPProvisioningChannel:
    return HTTPProvisioningChannel(
        {'base_url': base_url, 'request_timeout': 2, 'reboot_timeout': 2, 'flash_write_delay': 2},
        sleep=sleep or RecordingSleep(),
    )


class TestHTTPProvisioningChannel:
    """Tests for HTTPProvisioningChannel class."""

    @pytest.mark.asyncio
    async def test_saved_and_rebooted(self):
        """Test a matching read-back reports success and triggers a reboot."""
        app, state = hotspot_app()
        sleeper = RecordingSleep()
        async with serve(app) as base_url:
            result = await make_channel(base_url, sleeper).send_credentials(HOME)

        assert result.outcome is TransportOutcome.SUCCESS_WITHOUT_ADDRESS
        assert state['forms'] == [{'CS': "HomeNet", 'CP': "pw1234", 'I0': "0", 'WS': "1"}]
        assert state['reboots'] == 1
        assert sleeper.delays == [2]

    @pytest.mark.asyncio
    async def test_read_back_mismatch_is_rejection(self):
        """Test a controller that did not keep the network name rejects the credentials."""
        app, state = hotspot_app(saves=False)
        async with serve(app) as base_url:
            result = await make_channel(base_url).send_credentials(HOME)

        assert result.reason is FailureReason.REJECTED_CREDENTIALS
        assert state['reboots'] == 0

    @pytest.mark.asyncio
    async def test_server_error_is_protocol_error(self):
        """Test a non-2xx/3xx submission status is a protocol error."""
        async with serve(hotspot_app(settings_status=500)[0]) as base_url:
            result = await make_channel(base_url).send_credentials(HOME)

        assert result.reason is FailureReason.PROTOCOL_ERROR

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Test a closed port maps to UNREACHABLE."""
        async with serve(hotspot_app()[0]) as base_url:
            pass

        result = await make_channel(base_url).send_credentials(HOME)

        assert result.reason is FailureReason.UNREACHABLE

    @pytest.mark.asyncio
    async def test_verify_saved(self):
        """Test the standalone read-back check."""
        app, state = hotspot_app()
        state['ssid'] = "HomeNet"
        async with serve(app) as base_url:
            channel = make_channel(base_url)
            assert await channel.verify_saved(HOME)
            assert not await channel.verify_saved(Credentials("OtherNet"))
