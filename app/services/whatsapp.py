"""WhatsApp delivery through an HTTP gateway (Fonnte or Wablas).

Supports:
- Fonnte: POST {api_url}/send, form body, token in Authorization header
- Wablas: POST {api_url}/api/send-message, JSON body

Both gateways report success with HTTP 200 and ``{"status": true}``.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from collections.abc import Callable

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^628\d{8,12}$")
_SUPPORTED_GATEWAYS = ("fonnte", "wablas")


def normalize_phone(phone: str | None, country_code: str = "62") -> str | None:
    """Normalize to the ``62...`` form the gateways expect."""
    if not phone:
        return None
    digits = re.sub(r"[^0-9+]", "", phone)
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif not digits.startswith(country_code):
        digits = country_code + digits
    return digits


def is_valid_phone(phone: str | None) -> bool:
    return bool(phone) and bool(_PHONE_RE.match(phone))


class RateLimiter:
    """Sliding one-minute window shared by every sender thread."""

    def __init__(
        self,
        per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.per_minute = per_minute
        self._clock = clock
        self._sleep = sleep
        self._sent: deque[float] = deque()
        self._lock = threading.Lock()

    def wait(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                while self._sent and now - self._sent[0] >= 60:
                    self._sent.popleft()
                if len(self._sent) < self.per_minute:
                    self._sent.append(now)
                    return
                delay = 60 - (now - self._sent[0])
            logger.info("WhatsApp rate limit reached, waiting %.1fs", delay)
            self._sleep(max(delay, 0.1))


class WhatsAppClient:
    def __init__(
        self,
        gateway: str | None = None,
        api_url: str | None = None,
        api_key: str | None = None,
        http_client: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = (gateway or settings.whatsapp_gateway).lower()
        if self.gateway not in _SUPPORTED_GATEWAYS:
            raise ValueError(f"Unsupported WhatsApp gateway: {self.gateway}")
        self.api_url = (api_url or settings.whatsapp_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.whatsapp_api_key
        self._http = http_client or httpx.Client(timeout=settings.whatsapp_timeout)
        self._limiter = rate_limiter or RateLimiter(settings.whatsapp_rate_limit_per_minute)
        self._sleep = sleep

    def send_message(self, phone: str, message: str) -> bool:
        """Send one message, retrying gateway failures with exponential delay."""
        target = normalize_phone(phone, settings.whatsapp_country_code)
        if not is_valid_phone(target):
            logger.warning("Invalid WhatsApp number %r, not sending", phone)
            return False

        delay = settings.whatsapp_retry_delay
        attempts = settings.whatsapp_max_attempts
        for attempt in range(1, attempts + 1):
            self._limiter.wait()
            ok, error = self._send_once(target, message)
            if ok:
                logger.info("WhatsApp message sent to %s via %s", target, self.gateway)
                return True
            logger.warning(
                "WhatsApp send to %s failed (attempt %s/%s): %s",
                target,
                attempt,
                attempts,
                error,
            )
            if attempt < attempts:
                self._sleep(delay)
                delay *= settings.whatsapp_retry_multiplier
        logger.error("WhatsApp send to %s failed after %s attempts", target, attempts)
        return False

    def _send_once(self, target: str, message: str) -> tuple[bool, str | None]:
        try:
            if self.gateway == "fonnte":
                response = self._http.post(
                    f"{self.api_url}/send",
                    headers={"Authorization": self.api_key},
                    data={
                        "target": target,
                        "message": message,
                        "countryCode": settings.whatsapp_country_code,
                    },
                )
            else:
                response = self._http.post(
                    f"{self.api_url}/api/send-message",
                    headers={"Authorization": self.api_key},
                    json={"phone": target, "message": message},
                )
        except httpx.HTTPError as exc:
            return False, str(exc)

        if response.status_code != 200:
            return False, f"HTTP {response.status_code}: {response.text[:200]}"
        try:
            body = response.json()
        except ValueError:
            return False, "Invalid JSON response"
        if body.get("status") is True:
            return True, None
        return False, str(body.get("reason") or body.get("message") or body)
