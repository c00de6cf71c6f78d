"""Browser fingerprint generation.

Generates identity fingerprints (user agent, platform, viewport, locale,
timezone, geolocation, hardware hints) that stay consistent with the proxy
country they are paired with. A fingerprint mismatching its exit IP (US
address, Tokyo timezone) is itself a detection signal.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from stealth_engine.browser.behavior import get_profile


# ---------------------------------------------------------------------------
# User agents, paired with the navigator.platform they imply
# ---------------------------------------------------------------------------

USER_AGENTS: list[tuple[str, str]] = [
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36", "Win32"),
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36", "Win32"),
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36", "Win32"),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36", "MacIntel"),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36", "MacIntel"),
    ("Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36", "Linux x86_64"),
    ("Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36", "Linux x86_64"),
]

# Common desktop resolutions
SCREEN_SIZES: list[tuple[int, int]] = [
    (1920, 1080),
    (1536, 864),
    (1440, 900),
    (1366, 768),
    (2560, 1440),
]


# ---------------------------------------------------------------------------
# Country → locale data (ISO 3166 codes, matching proxy records)
# ---------------------------------------------------------------------------

COUNTRY_TIMEZONES: dict[str, list[str]] = {
    "US": ["America/New_York", "America/Chicago", "America/Denver", "America/Los_Angeles"],
    "CA": ["America/Toronto", "America/Vancouver"],
    "GB": ["Europe/London"],
    "AU": ["Australia/Sydney", "Australia/Melbourne", "Australia/Perth"],
    "DE": ["Europe/Berlin"],
    "FR": ["Europe/Paris"],
    "JP": ["Asia/Tokyo"],
}

COUNTRY_LOCALES: dict[str, list[str]] = {
    "US": ["en-US"],
    "CA": ["en-CA", "fr-CA"],
    "GB": ["en-GB"],
    "AU": ["en-AU"],
    "DE": ["de-DE"],
    "FR": ["fr-FR"],
    "JP": ["ja-JP"],
}

COUNTRY_GEOLOCATIONS: dict[str, dict[str, float]] = {
    "US": {"latitude": 40.7128, "longitude": -74.0060},     # New York
    "CA": {"latitude": 43.6532, "longitude": -79.3832},     # Toronto
    "GB": {"latitude": 51.5074, "longitude": -0.1278},      # London
    "AU": {"latitude": -33.8688, "longitude": 151.2093},    # Sydney
    "DE": {"latitude": 52.5200, "longitude": 13.4050},      # Berlin
    "FR": {"latitude": 48.8566, "longitude": 2.3522},       # Paris
    "JP": {"latitude": 35.6762, "longitude": 139.6503},     # Tokyo
}

ALL_TIMEZONES: list[str] = sorted({tz for tzs in COUNTRY_TIMEZONES.values() for tz in tzs})
ALL_LOCALES: list[str] = sorted({loc for locs in COUNTRY_LOCALES.values() for loc in locs})


# ---------------------------------------------------------------------------
# JavaScript overrides applied before any page script runs
# ---------------------------------------------------------------------------

STEALTH_INIT_JS = """
(hints) => {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined, configurable: true });
    Object.defineProperty(navigator, 'platform', { get: () => hints.platform, configurable: true });
    Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => hints.hardwareConcurrency, configurable: true });
    Object.defineProperty(navigator, 'deviceMemory', { get: () => hints.deviceMemory, configurable: true });

    if (!window.chrome) {
        window.chrome = {};
    }
    if (!window.chrome.runtime) {
        window.chrome.runtime = { connect: function() {}, sendMessage: function() {} };
    }

    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications'
            ? Promise.resolve({ state: Notification.permission })
            : originalQuery(parameters)
    );
}
"""


@dataclass(frozen=True)
class FingerprintProfile:
    """Browser identity presented for one session."""

    user_agent: str
    platform: str
    viewport_width: int
    viewport_height: int
    screen_width: int
    screen_height: int
    timezone: str
    locale: str
    geolocation: dict[str, float] | None
    hardware_concurrency: int
    device_memory: int
    country: str | None = None

    def context_options(self) -> dict:
        """Keyword arguments for a Playwright ``browser.new_context`` call."""
        options: dict = {
            "user_agent": self.user_agent,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "screen": {"width": self.screen_width, "height": self.screen_height},
            "locale": self.locale,
            "timezone_id": self.timezone,
            "extra_http_headers": {"Accept-Language": f"{self.locale},{self.locale.split('-')[0]};q=0.9"},
        }
        if self.geolocation:
            options["geolocation"] = self.geolocation
            options["permissions"] = ["geolocation"]
        return options

    def init_script_hints(self) -> dict:
        return {
            "platform": self.platform,
            "hardwareConcurrency": self.hardware_concurrency,
            "deviceMemory": self.device_memory,
        }

    def to_dict(self) -> dict:
        return {
            "user_agent": self.user_agent,
            "platform": self.platform,
            "viewport": [self.viewport_width, self.viewport_height],
            "timezone": self.timezone,
            "locale": self.locale,
            "country": self.country,
        }


class FingerprintGenerator:
    """Generates geo-consistent fingerprints and samples action delays."""

    def __init__(self, *, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self, country: str | None = None) -> FingerprintProfile:
        """Return a fresh :class:`FingerprintProfile` for *country*.

        Timezone, locale and geolocation follow the country when it is known;
        otherwise they are drawn from the full pool and geolocation is left
        unset.
        """
        user_agent, platform = self._rng.choice(USER_AGENTS)
        screen_width, screen_height = self._rng.choice(SCREEN_SIZES)

        # Browser chrome eats part of the screen
        viewport_width = screen_width - self._rng.randint(0, 16)
        viewport_height = screen_height - self._rng.randint(70, 140)

        code = country.upper() if country else None
        if code in COUNTRY_TIMEZONES:
            timezone = self._rng.choice(COUNTRY_TIMEZONES[code])
            locale = self._rng.choice(COUNTRY_LOCALES[code])
            geolocation = self._jitter(COUNTRY_GEOLOCATIONS[code])
        else:
            timezone = self._rng.choice(ALL_TIMEZONES)
            locale = self._rng.choice(ALL_LOCALES)
            geolocation = None

        return FingerprintProfile(
            user_agent=user_agent,
            platform=platform,
            viewport_width=viewport_width,
            viewport_height=viewport_height,
            screen_width=screen_width,
            screen_height=screen_height,
            timezone=timezone,
            locale=locale,
            geolocation=geolocation,
            hardware_concurrency=self._rng.choice([4, 8, 12, 16]),
            device_memory=self._rng.choice([4, 8, 16]),
            country=code,
        )

    def get_action_delay(self, behavior_profile: str, floor_ms: int = 0) -> float:
        """Delay in ms before the next action under *behavior_profile*."""
        return get_profile(behavior_profile).sample_delay(self._rng, floor_ms)

    def _jitter(self, point: dict[str, float]) -> dict[str, float]:
        # Roughly city-sized spread around the anchor
        return {
            "latitude": round(point["latitude"] + self._rng.uniform(-0.05, 0.05), 4),
            "longitude": round(point["longitude"] + self._rng.uniform(-0.05, 0.05), 4),
        }
