"""Best-effort device fingerprints and user-agent classification.

A fingerprint is a de-duplication hint only. Collisions are expected and
it must never be treated as a credential.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass

from meshenroll.registry.models import DeviceType

MAX_FINGERPRINT_LENGTH = 100
_FINGERPRINT_RE = re.compile(r"^[A-Za-z0-9-]+$")
_UNKNOWN = "unknown"
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class FingerprintSignals:
    """Ambient signals describing the requesting device. Any may be missing."""

    user_agent: str | None = None
    language: str | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    timezone_offset: int | None = None  # minutes
    cpu_count: int | None = None
    canvas_data: str | None = None

    def components(self) -> list[str]:
        screen = (
            f"{self.screen_width}x{self.screen_height}"
            if self.screen_width is not None and self.screen_height is not None
            else None
        )
        values: list[object | None] = [
            self.user_agent,
            self.language,
            screen,
            self.timezone_offset,
            self.cpu_count,
            self.canvas_data,
        ]
        return [_UNKNOWN if v is None or v == "" else str(v) for v in values]


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def rolling_hash(text: str) -> int:
    """32-bit ``h * 31 + c`` hash over UTF-16 code units."""
    data = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = _to_int32((h << 5) - h + unit)
    return h


def to_base36(value: int) -> str:
    """Lowercase base-36 rendering of a non-negative integer."""
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def generate_fingerprint(signals: FingerprintSignals) -> str:
    """Render a stable, compact base-36 fingerprint for the given signals."""
    return to_base36(abs(rolling_hash("|".join(signals.components()))))


def is_valid_fingerprint(value: str) -> bool:
    return 0 < len(value) <= MAX_FINGERPRINT_LENGTH and bool(_FINGERPRINT_RE.match(value))


def _int_or_none(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def signals_from_headers(headers: Mapping[str, str]) -> FingerprintSignals:
    """Build signals from request headers plus optional ``X-Client-*`` hints."""
    width = height = None
    screen = headers.get("x-client-screen", "")
    if "x" in screen:
        w, _, h = screen.partition("x")
        width, height = _int_or_none(w), _int_or_none(h)

    language = headers.get("accept-language", "").split(",")[0].strip() or None

    return FingerprintSignals(
        user_agent=headers.get("user-agent") or None,
        language=language,
        screen_width=width,
        screen_height=height,
        timezone_offset=_int_or_none(headers.get("x-client-timezone-offset")),
        cpu_count=_int_or_none(headers.get("x-client-cpu-count")),
        canvas_data=headers.get("x-client-canvas") or None,
    )


@dataclass
class DeviceInfo:
    name: str
    device_type: DeviceType
    os: str


def detect_device_info(user_agent: str | None) -> DeviceInfo:
    """Guess OS and form factor from a user-agent string."""
    ua = user_agent or ""
    os_name = "Unknown"
    device_type = DeviceType.laptop

    # Mobile platforms first: their UAs also mention Linux / Mac OS X
    if "Android" in ua:
        os_name = "Android"
        device_type = DeviceType.mobile
    elif "iPad" in ua:
        os_name = "iOS"
        device_type = DeviceType.tablet
    elif "iPhone" in ua:
        os_name = "iOS"
        device_type = DeviceType.mobile
    elif "Windows" in ua:
        os_name = "Windows 10/11" if "Windows NT 10" in ua else "Windows"
    elif "Mac" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"

    if "Mobile" in ua and device_type == DeviceType.laptop:
        device_type = DeviceType.mobile

    return DeviceInfo(
        name=f"{os_name} {device_type.value.capitalize()}",
        device_type=device_type,
        os=os_name,
    )
