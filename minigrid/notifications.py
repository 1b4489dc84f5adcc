import asyncio
import logging
import os
import time
from typing import Iterable, List, Optional, Protocol

from telegram import Bot
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

from minigrid.models.alert_models import AlertLogEntry, AlertType

logger = logging.getLogger(__name__)

_TITLES = {
    AlertType.PRICE_UP: "📈 <b>Price Up</b>",
    AlertType.PRICE_DOWN: "📉 <b>Price Down</b>",
    AlertType.VOLUME_ANOMALY: "🔊 <b>Volume Anomaly</b>",
}


class AlertSink(Protocol):
    def notify(self, entry: AlertLogEntry):
        ...


def format_alert(entry: AlertLogEntry) -> str:
    return (
        f"{_TITLES[entry.type]}\n\n"
        f"Symbol: {entry.symbol}\n"
        f"Price: {entry.price:g}\n"
        f"Volume: {entry.volume:g}\n"
        f"Time: {entry.timestamp}"
    )


class LogAlertSink:
    """Distinct log line per alert type."""

    def notify(self, entry: AlertLogEntry):
        if entry.type == AlertType.VOLUME_ANOMALY:
            logger.warning("🔊 VOLUME_ANOMALY %s price=%s volume=%s", entry.symbol, entry.price, entry.volume)
        elif entry.type == AlertType.PRICE_UP:
            logger.info("📈 PRICE_UP %s price=%s", entry.symbol, entry.price)
        else:
            logger.info("📉 PRICE_DOWN %s price=%s", entry.symbol, entry.price)


class TelegramAlertSink:
    def __init__(self, token: Optional[str], chat_id: Optional[str]):
        self.bot = None
        self.chat_id = chat_id
        self._send_lock = asyncio.Lock()
        self._global_backoff_until = 0.0
        self._next_send_at = 0.0
        self._message_last_sent_at = {}
        self._min_interval_sec = max(0.2, float(os.getenv("TELEGRAM_MIN_INTERVAL_SEC", "0.6")))
        self._dedupe_window_sec = max(1.0, float(os.getenv("TELEGRAM_DEDUPE_WINDOW_SEC", "4.0")))

        if token and chat_id:
            try:
                trequest = HTTPXRequest(connection_pool_size=8, read_timeout=30.0, write_timeout=30.0, connect_timeout=30.0)
                self.bot = Bot(token=token, request=trequest)
                logger.info("Telegram alert sink initialized.")
            except Exception as e:
                logger.error(f"Failed to initialize Telegram Bot: {e}")
        else:
            logger.warning("Telegram credentials missing. Telegram alerts disabled.")

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.chat_id)

    async def notify(self, entry: AlertLogEntry):
        await self.send_message(format_alert(entry))

    async def send_message(self, message: str):
        if not self.enabled:
            logger.debug(f"Alert (Not Sent): {message}")
            return

        now = time.monotonic()
        dedupe_key = message.strip()
        last_sent = self._message_last_sent_at.get(dedupe_key, 0.0)
        if (now - last_sent) < self._dedupe_window_sec:
            logger.debug("Telegram dedupe skip chat=%s", self.chat_id)
            return

        async with self._send_lock:
            for attempt in range(5):
                now = time.monotonic()
                wait_for = max(0.0, self._global_backoff_until - now, self._next_send_at - now)
                if wait_for > 0:
                    await asyncio.sleep(wait_for)

                try:
                    await self.bot.send_message(
                        chat_id=self.chat_id,
                        text=message,
                        parse_mode="HTML",
                        disable_web_page_preview=True,
                    )
                    sent_at = time.monotonic()
                    self._next_send_at = sent_at + self._min_interval_sec
                    self._message_last_sent_at[dedupe_key] = sent_at
                    return
                except RetryAfter as e:
                    retry_after = max(1, int(getattr(e, "retry_after", 1)))
                    self._global_backoff_until = max(self._global_backoff_until, time.monotonic() + retry_after + 1)
                    logger.warning("Telegram flood control. Retry after %ss.", retry_after)
                    continue
                except (TimedOut, NetworkError) as e:
                    wait = min(8, 2 ** attempt)
                    logger.warning("Telegram network timeout (attempt %s/5): %s", attempt + 1, e)
                    await asyncio.sleep(wait)
                except Exception as e:
                    logger.error(f"Failed to send Telegram message: {e}")
                    return


class CompositeAlertSink:
    """Fans one alert out to several sinks; coroutine sinks are awaited together."""

    def __init__(self, sinks: Iterable[AlertSink]):
        self.sinks: List[AlertSink] = list(sinks)

    async def notify(self, entry: AlertLogEntry):
        pending = []
        for sink in self.sinks:
            try:
                result = sink.notify(entry)
            except Exception:
                logger.exception("Alert sink %s failed", sink.__class__.__name__)
                continue
            if asyncio.iscoroutine(result):
                pending.append(result)
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Alert sink delivery failed: %s", result)


def build_alert_sink(cfg) -> CompositeAlertSink:
    sinks: List[AlertSink] = [LogAlertSink()]
    if cfg.TELEGRAM_BOT_TOKEN and cfg.TELEGRAM_CHAT_ID:
        sinks.append(TelegramAlertSink(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID))
    return CompositeAlertSink(sinks)
