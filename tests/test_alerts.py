"""
Tests for tradecore/alerts.py
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from tradecore.alerts import CRITICAL, WARNING, AlertDispatcher


class TestAlertDispatcher:

    @pytest.mark.asyncio
    async def test_subscribers_receive_alert(self, alerts):
        alert = await alerts.critical('UNPROTECTED_POSITION', 'naked long', trade_id='t1')

        assert alerts.received == [alert]
        assert alert.severity == CRITICAL
        assert alert.context == {'trade_id': 't1'}

    @pytest.mark.asyncio
    async def test_async_subscriber_is_awaited(self):
        dispatcher = AlertDispatcher(webhook_url='')
        callback = AsyncMock()
        dispatcher.subscribe(callback)

        alert = await dispatcher.warning('CIRCUIT_OPEN', 'bybit down')

        callback.assert_awaited_once_with(alert)

    @pytest.mark.asyncio
    async def test_broken_subscriber_does_not_block_others(self, caplog):
        dispatcher = AlertDispatcher(webhook_url='')
        received = []

        def broken(alert):
            raise RuntimeError('smtp down')

        dispatcher.subscribe(broken)
        dispatcher.subscribe(received.append)

        with caplog.at_level(logging.ERROR):
            await dispatcher.info('TRADE_EXECUTED', 'bought')

        assert len(received) == 1
        assert 'Alert subscriber failed' in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe(self, alerts):
        received = []
        unsubscribe = alerts.subscribe(received.append)
        unsubscribe()

        await alerts.notify(WARNING, 'TEST', 'hello')

        assert received == []

    @pytest.mark.asyncio
    async def test_webhook_only_when_configured(self):
        silent = AlertDispatcher(webhook_url='')
        loud = AlertDispatcher(webhook_url='https://hooks.example.com/alerts')

        with patch.object(AlertDispatcher, '_post_webhook', new_callable=AsyncMock) as post:
            await silent.critical('X', 'x')
            post.assert_not_awaited()

            alert = await loud.critical('X', 'x')
            post.assert_awaited_once_with(alert)

    @pytest.mark.asyncio
    async def test_webhook_failure_is_logged(self, caplog):
        dispatcher = AlertDispatcher(webhook_url='http://127.0.0.1:9/unreachable', timeout=0.5)

        with caplog.at_level(logging.ERROR):
            await dispatcher.critical('X', 'x')

        assert 'Failed to deliver alert X' in caplog.text
