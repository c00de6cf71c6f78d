"""CAPTCHA solving collaborator.

``HttpCaptchaSolver`` talks to a 2captcha-style service: submit the
challenge to ``in.php``, then poll ``res.php`` until the token is ready.
Each solve is bounded by a wall-clock timeout and a maximum number of
submissions; exhausting either raises ``CaptchaSolveError``, which recovery
treats as a failed strategy.

SECURITY: Never logs the API key or the solved token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from stealth_engine.middleware.error_handler import CaptchaSolveError

logger = logging.getLogger(__name__)

_NOT_READY = "CAPCHA_NOT_READY"

# Challenge type → service submission method
_METHODS: dict[str, str] = {
    "recaptcha": "userrecaptcha",
    "hcaptcha": "hcaptcha",
    "turnstile": "turnstile",
    "image": "base64",
}


@dataclass(frozen=True)
class CaptchaChallenge:
    """A challenge found on a page."""

    type: str  # recaptcha, hcaptcha, turnstile, image
    page_url: str
    sitekey: str | None = None
    image_base64: str | None = None


@runtime_checkable
class CaptchaSolver(Protocol):
    async def solve(self, challenge: CaptchaChallenge) -> str: ...


class HttpCaptchaSolver:
    """Submit/poll client for a 2captcha-compatible API.

    Parameters
    ----------
    api_url:
        Service base URL, e.g. ``"https://2captcha.com"``.
    api_key:
        Account key, sent with every request.
    timeout_seconds:
        Wall-clock budget for one submission, polling included.
    max_attempts:
        Submissions before giving up.
    poll_interval_seconds:
        Pause between ``res.php`` polls.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 120.0,
        max_attempts: int = 2,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts
        self._poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self.solved = 0
        self.failed = 0

    async def solve(self, challenge: CaptchaChallenge) -> str:
        """Return a solution token for *challenge*.

        Raises
        ------
        CaptchaSolveError
            If every attempt failed or timed out.
        """
        if challenge.type not in _METHODS:
            raise CaptchaSolveError(f"Unsupported CAPTCHA type '{challenge.type}'")

        last_reason = "no attempt made"
        for attempt in range(1, self._max_attempts + 1):
            try:
                token = await self._solve_once(challenge)
            except (httpx.HTTPError, CaptchaSolveError) as exc:
                last_reason = str(exc)
                logger.warning(
                    "CAPTCHA attempt %d/%d failed: %s",
                    attempt,
                    self._max_attempts,
                    last_reason,
                    extra={"target_url": challenge.page_url, "attempt": attempt},
                )
                continue

            self.solved += 1
            logger.info(
                "CAPTCHA solved on attempt %d",
                attempt,
                extra={"target_url": challenge.page_url, "attempt": attempt},
            )
            return token

        self.failed += 1
        raise CaptchaSolveError(
            f"CAPTCHA not solved after {self._max_attempts} attempts: {last_reason}",
            captcha_type=challenge.type,
        )

    async def _solve_once(self, challenge: CaptchaChallenge) -> str:
        deadline = time.monotonic() + self._timeout_seconds

        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
            response = await client.post(
                f"{self._api_url}/in.php",
                data=self._submission(challenge),
            )
            response.raise_for_status()
            payload = response.json()
            if payload.get("status") != 1:
                raise CaptchaSolveError(f"Submission rejected: {payload.get('request')}")
            task_id = payload["request"]

            max_polls = max(1, int(self._timeout_seconds // self._poll_interval_seconds))
            for _ in range(max_polls):
                if time.monotonic() >= deadline:
                    break
                await self._sleep(self._poll_interval_seconds)
                response = await client.get(
                    f"{self._api_url}/res.php",
                    params={"key": self._api_key, "action": "get", "id": task_id, "json": 1},
                )
                response.raise_for_status()
                payload = response.json()
                if payload.get("status") == 1:
                    return payload["request"]
                if payload.get("request") != _NOT_READY:
                    raise CaptchaSolveError(f"Solver error: {payload.get('request')}")

        raise CaptchaSolveError(f"Timed out after {self._timeout_seconds:.0f}s")

    def _submission(self, challenge: CaptchaChallenge) -> dict:
        data: dict = {
            "key": self._api_key,
            "method": _METHODS[challenge.type],
            "pageurl": challenge.page_url,
            "json": 1,
        }
        if challenge.type == "image":
            data["body"] = challenge.image_base64 or ""
        elif challenge.type == "recaptcha":
            data["googlekey"] = challenge.sitekey or ""
        else:
            data["sitekey"] = challenge.sitekey or ""
        return data

    def get_stats(self) -> dict:
        return {"solved": self.solved, "failed": self.failed}
