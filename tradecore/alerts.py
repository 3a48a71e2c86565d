# tradecore/alerts.py
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Union

import aiohttp

from tradecore.config import config

INFO = 'INFO'
WARNING = 'WARNING'
CRITICAL = 'CRITICAL'

_LEVELS = {INFO: logging.INFO, WARNING: logging.WARNING, CRITICAL: logging.CRITICAL}


@dataclass
class Alert:
    severity: str
    kind: str
    message: str
    context: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Subscriber = Callable[[Alert], Union[None, Awaitable[None]]]


class AlertDispatcher:
    """
    Fans out operational alerts to subscribers and an optional webhook.
    Every alert is logged at its own severity before delivery, so a
    broken subscriber can never hide it.
    """
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url if webhook_url is not None else config.ALERT_WEBHOOK_URL
        self.timeout = timeout
        self.subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self.subscribers.append(callback)
        return lambda: self.subscribers.remove(callback)

    async def notify(self, severity: str, kind: str, message: str, **context) -> Alert:
        alert = Alert(severity=severity, kind=kind, message=message, context=context)
        logging.log(_LEVELS.get(severity, logging.WARNING), f"ALERT [{kind}] {message} {context}")

        for callback in list(self.subscribers):
            try:
                result = callback(alert)
                if hasattr(result, '__await__'):
                    await result
            except Exception:
                logging.error(f"Alert subscriber failed for {kind}", exc_info=True)

        if self.webhook_url:
            await self._post_webhook(alert)
        return alert

    async def _post_webhook(self, alert: Alert):
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json=asdict(alert)) as response:
                    response.raise_for_status()
        except Exception as e:
            logging.error(f"Failed to deliver alert {alert.kind} to webhook: {e}")

    async def critical(self, kind: str, message: str, **context) -> Alert:
        return await self.notify(CRITICAL, kind, message, **context)

    async def warning(self, kind: str, message: str, **context) -> Alert:
        return await self.notify(WARNING, kind, message, **context)

    async def info(self, kind: str, message: str, **context) -> Alert:
        return await self.notify(INFO, kind, message, **context)
