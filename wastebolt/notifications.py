"""
Outbound SMS/WhatsApp-style messages to customers and collectors.

Delivery runs on a small worker pool so callers never wait on the gateway.
A failed delivery is logged and dropped.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable, Dict, Optional

import requests

from wastebolt.retry import retry_io

logger = logging.getLogger(__name__)


class MessageChannel:
    def send(self, recipient: str, message: str) -> None:
        raise NotImplementedError


class LogChannel(MessageChannel):
    """Used when no messaging gateway is configured."""

    def send(self, recipient: str, message: str) -> None:
        logger.info("Message to %s: %s", recipient, message.replace("\n", " | "))


class GatewayError(Exception):
    pass


class WebhookChannel(MessageChannel):
    def __init__(self, url: str, timeout_s: float = 10.0, attempts: int = 3, base_sleep_s: float = 0.5):
        self.url = url
        self.timeout_s = timeout_s
        self.attempts = attempts
        self.base_sleep_s = base_sleep_s
        self.sess = requests.Session()
        self.sess.headers.update({"User-Agent": "wastebolt-dispatch/0.1"})

    def _post(self, payload: Dict[str, Any]) -> None:
        r = self.sess.post(self.url, json=payload, timeout=self.timeout_s)
        if r.status_code >= 500:
            raise GatewayError(f"gateway returned {r.status_code}")
        # 4xx means a bad recipient or payload; retrying won't help
        r.raise_for_status()

    def send(self, recipient: str, message: str) -> None:
        payload = {"to": recipient, "message": message}
        retry_io(
            lambda: self._post(payload),
            attempts=self.attempts,
            base_sleep_s=self.base_sleep_s,
            retry_on=(GatewayError, requests.ConnectionError, requests.Timeout),
            label="messaging gateway",
        )


class Notifier:
    def __init__(self, channel: MessageChannel, workers: int = 4):
        self.channel = channel
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")
        self._pending = set()
        self._pending_lock = threading.Lock()

    def send(self, recipient: Optional[str], message: str) -> Optional[Future]:
        if not recipient:
            logger.debug("No recipient handle; dropping message")
            return None
        return self._track(self._executor.submit(self._deliver, recipient, message))

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run fn in the background; errors are logged, never raised to the caller."""
        return self._track(self._executor.submit(self._guard, fn, *args))

    def _track(self, future: Future) -> Future:
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._untrack)
        return future

    def _untrack(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued deliveries, including ones queued while waiting."""
        while True:
            with self._pending_lock:
                pending = list(self._pending)
            if not pending:
                return True
            _, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                return False

    def _deliver(self, recipient: str, message: str) -> None:
        try:
            self.channel.send(recipient, message)
        except Exception:
            logger.exception("Failed to notify %s", recipient)

    @staticmethod
    def _guard(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Background notification task %s failed", getattr(fn, "__name__", fn))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def build_channel(webhook_url: str, timeout_s: float = 10.0) -> MessageChannel:
    if webhook_url:
        return WebhookChannel(webhook_url, timeout_s=timeout_s)
    return LogChannel()


# ------------------ Message templates ------------------
def request_confirmation(request: Dict[str, Any]) -> str:
    price = request["price_estimate"]
    return (
        "Nairobi Waste Tracking - Request received\n"
        f"Request: {request['id']}\n"
        f"Waste: {request['waste_type']} ({request['quantity']} kg)\n"
        f"Pickup: {request['location'].get('address') or 'pinned location'}\n"
        f"Estimate: {price['currency']} {price['final_price']}\n"
        "We are finding a collector near you."
    )


def new_request_for_collector(request: Dict[str, Any], distance_km: float) -> str:
    price = request["price_estimate"]
    return (
        "New waste collection request\n"
        f"Request: {request['id']}\n"
        f"Waste: {request['waste_type']} ({request['quantity']} kg), urgency {request['urgency']}\n"
        f"Distance: {distance_km:.1f} km\n"
        f"Pays: {price['currency']} {price['final_price']}"
    )


STATUS_TEXT = {
    "assigned": "A collector has accepted your request",
    "en_route": "Your collector is on the way",
    "arrived": "Your collector has arrived",
    "collecting": "Collection in progress",
    "completed": "Collection completed. Thank you for recycling!",
    "cancelled": "Your collection was cancelled",
}


def status_update(request_id: str, status: str, collector_name: Optional[str] = None) -> str:
    text = f"Nairobi Waste Tracking - {STATUS_TEXT.get(status, status)}\nRequest: {request_id}"
    if collector_name:
        text += f"\nCollector: {collector_name}"
    return text


def payment_confirmation(request_id: str, amount: float, currency: str = "KES") -> str:
    return f"Nairobi Waste Tracking - Payment confirmed\nRequest: {request_id}\nAmount: {currency} {amount:.0f}"


def request_expired(request_id: str) -> str:
    return (
        "Nairobi Waste Tracking - No collector available\n"
        f"Request: {request_id} was cancelled because no collector accepted it in time. "
        "Please try again later."
    )
