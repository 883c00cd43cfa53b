"""Retry policy for provider calls.

Classifies failures into authentication, transient, and everything else.
Authentication failures are never retried and raise the credential-invalid
signal once; transient failures back off exponentially with jitter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 5
BASE_DELAY = 2.0   # seconds
MAX_JITTER = 1.0   # seconds

_AUTH_MARKERS = ("api key not valid", "invalid api key", "requested entity was not found")
_TRANSIENT_MARKERS = ("503", "overloaded", "unavailable")
_TRANSIENT_STATUSES = {503, 529, "UNAVAILABLE", "503"}


class ProviderError(Exception):
    """A generation provider call failed and will not be retried further."""


class AuthenticationError(ProviderError):
    """Provider rejected the credential. Never retried."""


class ProviderTransientError(ProviderError):
    """Provider stayed overloaded/unavailable through every retry."""


class CredentialSignal:
    """Observer for credential-invalid events.

    Replaces an ambient global event: whoever cares (the console, a UI)
    subscribes; retry policies emit.
    """

    def __init__(self):
        self._callbacks: list[Callable[[BaseException], Any]] = []
        self.fired = 0

    def subscribe(self, callback: Callable[[BaseException], Any]) -> None:
        self._callbacks.append(callback)

    def emit(self, error: BaseException) -> None:
        # One emission per failure, however many policies it passes through
        if getattr(error, "_credential_signalled", False):
            return
        try:
            error._credential_signalled = True  # type: ignore[attr-defined]
        except AttributeError:
            pass
        self.fired += 1
        for cb in self._callbacks:
            try:
                cb(error)
            except Exception:
                log.exception("credential signal callback failed")


def _error_status(error: BaseException) -> Any:
    """Pull a status out of SDK/HTTP errors (top-level or nested)."""
    for attr in ("status", "status_code"):
        val = getattr(error, attr, None)
        if val is not None:
            return val
    response = getattr(error, "response", None)
    if response is not None:
        val = getattr(response, "status_code", None)
        if val is not None:
            return val
    nested = getattr(error, "error", None)
    if isinstance(nested, dict):
        return nested.get("status")
    if nested is not None:
        return getattr(nested, "status", None)
    return None


def _error_text(error: BaseException) -> str:
    parts = [str(error)]
    body = getattr(error, "body", None)
    if body:
        try:
            parts.append(json.dumps(body))
        except (TypeError, ValueError):
            parts.append(str(body))
    return " ".join(parts).lower()


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, AuthenticationError):
        return True
    if _error_status(error) == 401:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _AUTH_MARKERS)


def is_transient_error(error: BaseException) -> bool:
    # Already classified by an inner policy: retries are spent
    if isinstance(error, ProviderError):
        return False
    status = _error_status(error)
    if status in _TRANSIENT_STATUSES:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def classify(error: BaseException) -> str:
    """Return "auth", "transient", or "fatal"."""
    if is_auth_error(error):
        return "auth"
    if is_transient_error(error):
        return "transient"
    return "fatal"


@dataclass
class GenerationAttempt:
    attempt: int = 0
    last_classification: str = ""


class RetryPolicy:
    """Wraps one provider call with classification and exponential backoff."""

    def __init__(
        self,
        signal: CredentialSignal | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY,
        max_jitter: float = MAX_JITTER,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: Any = None,
    ):
        self.signal = signal or CredentialSignal()
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self._sleep = sleep or asyncio.sleep
        self._rng = rng

    def _jitter(self) -> float:
        draw = self._rng.next() if self._rng is not None else random.random()  # noqa: S311
        return draw * self.max_jitter

    def backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + self._jitter()

    async def execute(self, call: Callable[[], Awaitable[T]]) -> T:
        state = GenerationAttempt()
        while True:
            try:
                return await call()
            except Exception as e:
                state.last_classification = classify(e)
                log.warning("Provider call attempt %d/%d failed (%s): %s",
                            state.attempt + 1, self.max_attempts,
                            state.last_classification, e)

                if state.last_classification == "auth":
                    self.signal.emit(e)
                    if isinstance(e, AuthenticationError):
                        raise
                    auth_error = AuthenticationError(str(e))
                    auth_error._credential_signalled = True  # type: ignore[attr-defined]
                    raise auth_error from e

                if state.last_classification == "transient":
                    if state.attempt < self.max_attempts - 1:
                        delay = self.backoff(state.attempt)
                        log.info("Transient provider error, retrying in %.1fs", delay)
                        await self._sleep(delay)
                        state.attempt += 1
                        continue
                    log.error("Provider still unavailable after %d attempts", self.max_attempts)
                    if isinstance(e, ProviderTransientError):
                        raise
                    raise ProviderTransientError(str(e)) from e

                if isinstance(e, ProviderError):
                    raise
                # Timeouts stringify to ""
                raise ProviderError(str(e) or type(e).__name__) from e
