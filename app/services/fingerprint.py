"""
Fingerprint ingest — validation & normalization of the client-supplied
device identifier and descriptive payload.

Pure functions, no DB access.  The device payload is descriptive only:
it feeds display helpers (`classify_device_type`, `browser_name`) and
is never consulted for authorization.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from app.core.exceptions import InvalidInputError

MAX_DEVICE_ID_LENGTH = 256

# camelCase keys sent by browser fingerprinting → stored snake_case keys
_KNOWN_FIELDS = {
    "userAgent": "user_agent",
    "user_agent": "user_agent",
    "platform": "platform",
    "screenResolution": "screen_resolution",
    "screen_resolution": "screen_resolution",
    "timezone": "timezone",
    "language": "language",
}


@dataclass(frozen=True)
class DeviceFingerprint:
    device_id: str
    device_info: dict[str, Any] = field(default_factory=dict)

    @property
    def user_agent(self) -> str:
        return self.device_info["user_agent"]


def normalize_device_info(device_info: Mapping[str, Any]) -> dict[str, Any]:
    """Rename known descriptive keys to snake_case; keep extras verbatim."""
    normalized: dict[str, Any] = {}
    for key, value in device_info.items():
        target = _KNOWN_FIELDS.get(key, key)
        # An explicit snake_case key wins over its camelCase twin
        if target in normalized and key != target:
            continue
        normalized[target] = value
    return normalized


def ingest_fingerprint(device_id: Any, device_info: Any) -> DeviceFingerprint:
    """
    Validate `(device_id, device_info)` and return the normalized form.

    Raises InvalidInputError when the device id is empty or oversized,
    or when the payload is not a mapping carrying a user agent.
    """
    if not isinstance(device_id, str) or not device_id.strip():
        raise InvalidInputError("Device ID is required")
    device_id = device_id.strip()
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise InvalidInputError(
            f"Device ID must be at most {MAX_DEVICE_ID_LENGTH} characters"
        )

    if not isinstance(device_info, Mapping):
        raise InvalidInputError("Device info is required")

    info = normalize_device_info(device_info)
    user_agent = info.get("user_agent")
    if not isinstance(user_agent, str) or not user_agent.strip():
        raise InvalidInputError("Device info must include a user agent")
    info["user_agent"] = user_agent.strip()

    return DeviceFingerprint(device_id=device_id, device_info=info)


# ── Display helpers ──────────────────────────────────────────────────


def _user_agent_of(device_info: Mapping[str, Any] | None) -> str:
    if not device_info:
        return ""
    ua = device_info.get("user_agent") or device_info.get("userAgent") or ""
    return ua if isinstance(ua, str) else ""


def classify_device_type(device_info: Mapping[str, Any] | None) -> str:
    """Mobile / Tablet / Desktop from the user agent."""
    ua = _user_agent_of(device_info).lower()
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "Mobile"
    if "tablet" in ua or "ipad" in ua:
        return "Tablet"
    return "Desktop"


def browser_name(device_info: Mapping[str, Any] | None) -> str:
    ua = _user_agent_of(device_info)
    if not ua:
        return "Unknown"
    # Edge and Chrome both advertise "Chrome"; check Edge first
    if "Edg" in ua:
        return "Edge"
    if "Chrome" in ua:
        return "Chrome"
    if "Firefox" in ua:
        return "Firefox"
    if "Safari" in ua:
        return "Safari"
    return "Unknown Browser"
