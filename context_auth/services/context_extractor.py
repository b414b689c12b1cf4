"""
Context Extractor - derives the environment fingerprint of a sign-in request
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from fastapi import Request

from context_auth.models.models import UNKNOWN, DeviceClass, Fingerprint, ParsedUserAgent
from context_auth.utils.helpers import client_address
from context_auth.utils.user_agent import user_agent_parser

log = logging.getLogger(__name__)

GeoLookup = Callable[[str], Optional[Dict[str, Optional[str]]]]


def _text(value) -> str:
    if value is None:
        return UNKNOWN
    value = str(value).strip()
    return value or UNKNOWN


def _device_class(ua: ParsedUserAgent) -> DeviceClass:
    # Fixed precedence even when upstream sets several flags
    if ua.is_mobile:
        return DeviceClass.MOBILE
    if ua.is_desktop:
        return DeviceClass.DESKTOP
    if ua.is_tablet:
        return DeviceClass.TABLET
    return DeviceClass.UNKNOWN


def extract_fingerprint(address: Optional[str], ua: Optional[ParsedUserAgent],
                        geolocate: Optional[GeoLookup] = None) -> Fingerprint:
    """
    Build a Fingerprint from a client address and a parsed user agent.

    Never raises: anything missing or failing degrades to "unknown".
    """
    ua = ua or ParsedUserAgent()
    network_origin = _text(address)

    country = city = UNKNOWN
    if geolocate is not None and network_origin != UNKNOWN:
        try:
            location = geolocate(network_origin) or {}
        except Exception as e:
            log.warning("Geolocation collaborator failed for %s: %s", network_origin, e)
            location = {}
        country = _text(location.get("country_code") or location.get("country"))
        city = _text(location.get("city"))

    if ua.browser:
        browser = f"{ua.browser} {ua.version}" if ua.version else str(ua.browser)
    else:
        browser = UNKNOWN

    return Fingerprint(
        network_origin=network_origin,
        country=country,
        city=city,
        browser=browser,
        platform=_text(ua.platform),
        os=_text(ua.os),
        device=_text(ua.device),
        device_class=_device_class(ua),
    )


async def fingerprint_from_request(req: Request, geolocate: Optional[GeoLookup] = None) -> Fingerprint:
    """Fingerprint of an inbound request; the geolocation lookup runs off the event loop."""
    address = client_address(req)
    ua = user_agent_parser.parse(req.headers.get("user-agent"))
    location = None
    if geolocate is not None and address:
        try:
            location = await asyncio.to_thread(geolocate, address)
        except Exception as e:
            log.warning("Geolocation collaborator failed for %s: %s", address, e)
    return extract_fingerprint(address, ua, (lambda _ip: location) if location else None)
