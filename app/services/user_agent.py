"""User agent classification for visitor contexts.

Backed by the ua-parser regex database through ``user_agents``. OS and
browser families are reported the way that database names them, e.g.
"Mac OS X", "iOS", "Chrome Mobile", "Mobile Safari".
"""

from typing import NamedTuple, Optional

from user_agents import parse
from user_agents.parsers import UserAgent

from app.models.routing import DeviceType

# Family ua-parser reports when nothing matched
UNKNOWN_FAMILY = "Other"


class UserAgentInfo(NamedTuple):
    device: str
    os: Optional[str]
    browser: Optional[str]


def _parse(user_agent: Optional[str]) -> Optional[UserAgent]:
    if not user_agent:
        return None
    return parse(user_agent)


def _family(family: Optional[str]) -> Optional[str]:
    if not family or family == UNKNOWN_FAMILY:
        return None
    return family


def _device_type(agent: Optional[UserAgent]) -> str:
    if agent is None:
        return DeviceType.DESKTOP.value
    if agent.is_tablet:
        return DeviceType.TABLET.value
    if agent.is_mobile:
        return DeviceType.MOBILE.value
    return DeviceType.DESKTOP.value


def parse_device_type(user_agent: Optional[str]) -> str:
    """
    Parse device type from user agent string.
    Returns 'mobile', 'tablet', or 'desktop'.
    """
    return _device_type(_parse(user_agent))


def parse_os(user_agent: Optional[str]) -> Optional[str]:
    """Operating system family, or None when unknown."""
    agent = _parse(user_agent)
    return _family(agent.os.family) if agent else None


def parse_browser(user_agent: Optional[str]) -> Optional[str]:
    """Browser family, or None when unknown."""
    agent = _parse(user_agent)
    return _family(agent.browser.family) if agent else None


def classify(user_agent: Optional[str]) -> UserAgentInfo:
    agent = _parse(user_agent)
    if agent is None:
        return UserAgentInfo(device=DeviceType.DESKTOP.value, os=None, browser=None)
    return UserAgentInfo(
        device=_device_type(agent),
        os=_family(agent.os.family),
        browser=_family(agent.browser.family),
    )
