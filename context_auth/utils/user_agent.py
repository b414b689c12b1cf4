# context_auth/utils/user_agent.py
"""
Regex based user-agent parser. Produces the pre-parsed shape the context
extractor expects; unrecognised parts stay None.
"""
import re
from typing import Optional, Tuple

from context_auth.models.models import ParsedUserAgent


class UserAgentParser:
    """Extracts browser, OS, platform and device information from user agent strings."""

    # Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari
    BROWSER_PATTERNS = [
        (r"Edg(?:e|A|iOS)?/([\d.]+)", "Edge"),
        (r"(?:OPR|Opera)/([\d.]+)", "Opera"),
        (r"SamsungBrowser/([\d.]+)", "Samsung Internet"),
        (r"UCBrowser/([\d.]+)", "UC Browser"),
        (r"(?:Firefox|FxiOS)/([\d.]+)", "Firefox"),
        (r"(?:Chrome|CriOS)/([\d.]+)", "Chrome"),
        (r"Version/([\d.]+).*Safari/", "Safari"),
        (r"(?:MSIE |Trident/.*rv:)([\d.]+)", "IE"),
        (r"PostmanRuntime/([\d.]+)", "PostmanRuntime"),
        (r"curl/([\d.]+)", "curl"),
    ]

    OS_PATTERNS = [
        (r"Windows Phone", "Windows Phone"),
        (r"Windows NT 10\.0", "Windows 10.0"),
        (r"Windows NT 6\.3", "Windows 8.1"),
        (r"Windows NT 6\.1", "Windows 7"),
        (r"Windows", "Windows"),
        (r"(?:iPhone|iPad|iPod).*? OS (\d+)", "iOS"),
        (r"Android", "Android"),
        (r"CrOS", "Chrome OS"),
        (r"Mac OS X", "OS X"),
        (r"Linux", "Linux"),
    ]

    PLATFORM_PATTERNS = [
        (r"Windows", "Microsoft Windows"),
        (r"iPhone", "iPhone"),
        (r"iPad", "iPad"),
        (r"iPod", "iPod"),
        (r"Android", "Android"),
        (r"Macintosh|Mac OS X", "Apple Mac"),
        (r"CrOS", "Chrome OS"),
        (r"Linux", "Linux"),
    ]

    MOBILE_PATTERNS = [
        r"Mobile",
        r"iPhone",
        r"iPod",
        r"BlackBerry",
        r"Windows Phone",
    ]

    TABLET_PATTERNS = [
        r"iPad",
        r"Android(?!.*Mobile)",
        r"Tablet",
    ]

    DESKTOP_PATTERNS = [
        r"Windows NT",
        r"Macintosh",
        r"X11",
        r"CrOS",
    ]

    @staticmethod
    def _first(patterns, user_agent: str) -> Tuple[Optional[str], Optional[str]]:
        for pattern, name in patterns:
            match = re.search(pattern, user_agent)
            if match:
                return name, (match.group(1) if match.groups() else None)
        return None, None

    def parse(self, user_agent: Optional[str]) -> ParsedUserAgent:
        """Parse a user agent string."""
        if not user_agent:
            return ParsedUserAgent(raw="")

        result = ParsedUserAgent(raw=user_agent)
        result.browser, result.version = self._first(self.BROWSER_PATTERNS, user_agent)

        os_name, os_version = self._first(self.OS_PATTERNS, user_agent)
        if os_name == "iOS" and os_version:
            os_name = f"iOS {os_version}"
        result.os = os_name
        result.platform, _ = self._first(self.PLATFORM_PATTERNS, user_agent)

        result.is_tablet = any(re.search(p, user_agent) for p in self.TABLET_PATTERNS)
        result.is_mobile = not result.is_tablet and any(re.search(p, user_agent) for p in self.MOBILE_PATTERNS)
        result.is_desktop = (not result.is_mobile and not result.is_tablet
                             and any(re.search(p, user_agent) for p in self.DESKTOP_PATTERNS))

        if result.is_mobile or result.is_tablet:
            result.device = result.platform
        elif result.is_desktop:
            result.device = "Desktop"
        return result


user_agent_parser = UserAgentParser()
