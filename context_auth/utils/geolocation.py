# context_auth/utils/geolocation.py
import ipaddress
import logging
import time
from typing import Dict, Optional

import requests

log = logging.getLogger(__name__)

DEFAULT_URL = "http://ip-api.com/json/{ip}?fields=status,message,country,countryCode,regionName,city"

# Returned for loopback / private addresses without touching the network
_LOCAL_GEOLOCATION = {
    'city': 'Local Development',
    'region': 'Local Environment',
    'country': 'Development',
    'country_code': 'DEV',
}


def _is_local(ip_address: str) -> bool:
    if ip_address == 'localhost':
        return True
    try:
        addr = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private or addr.is_link_local


class GeolocationService:
    """Service for IP-based geolocation lookup"""

    def __init__(self, url: str = DEFAULT_URL, timeout: float = 5, cache_ttl: int = 300, enabled: bool = True,
                 max_cache_entries: int = 1024):
        self.url = url
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.max_cache_entries = max_cache_entries
        self.enabled = enabled
        # Format: {ip_address: {'data': geolocation_dict, 'timestamp': unix_timestamp}}
        self._cache: Dict[str, Dict] = {}

    @classmethod
    def from_settings(cls, settings) -> "GeolocationService":
        return cls(
            url=settings.geolocation_url,
            timeout=settings.geolocation_timeout,
            cache_ttl=settings.geolocation_cache_ttl,
            enabled=settings.geolocation_enabled,
        )

    def get_ip_geolocation(self, ip_address: Optional[str]) -> Optional[Dict[str, str]]:
        """
        Get geolocation data for an IP address using ip-api.com (45 requests/min free)
        Returns None if lookup fails or IP is invalid
        Caches results for `cache_ttl` seconds to reduce API calls
        """
        if not ip_address or ip_address == 'unknown':
            return None
        if _is_local(ip_address):
            log.debug("Skipping geolocation for local IP: %s", ip_address)
            return dict(_LOCAL_GEOLOCATION, ip=ip_address)
        if not self.enabled:
            return None

        # Check cache first
        current_time = time.time()
        cached_entry = self._cache.get(ip_address)
        if cached_entry:
            if current_time - cached_entry['timestamp'] < self.cache_ttl:
                log.debug("Using cached geolocation for IP: %s", ip_address)
                return cached_entry['data']
            del self._cache[ip_address]

        try:
            log.debug("Looking up geolocation for IP: %s", ip_address)
            response = requests.get(self.url.format(ip=ip_address), timeout=self.timeout)

            if response.status_code != 200:
                log.warning("Geolocation lookup failed for IP %s: HTTP %s", ip_address, response.status_code)
                return None

            data = response.json()
            if data.get('status') != 'success':
                log.warning("Geolocation lookup failed for IP %s: %s", ip_address, data.get('message', 'Unknown error'))
                return None

            geolocation = {
                'ip': ip_address,
                'city': data.get('city'),
                'region': data.get('regionName'),
                'country': data.get('country'),
                'country_code': data.get('countryCode'),
            }
            self._prune_cache(current_time)
            self._cache[ip_address] = {
                'data': geolocation,
                'timestamp': current_time
            }
            log.debug("Geolocation lookup successful for IP %s: %s, %s",
                      ip_address, geolocation['city'], geolocation['country_code'])
            return geolocation

        except requests.exceptions.Timeout:
            log.warning("Geolocation lookup timeout for IP %s", ip_address)
            return None
        except requests.exceptions.RequestException as e:
            log.warning("Geolocation lookup request failed for IP %s: %s", ip_address, str(e))
            return None
        except ValueError as e:
            log.warning("Geolocation lookup returned invalid JSON for IP %s: %s", ip_address, str(e))
            return None

    def _prune_cache(self, current_time: float):
        """Drop expired entries, then the oldest ones, so there is room for one more"""
        for ip, entry in list(self._cache.items()):
            if current_time - entry['timestamp'] >= self.cache_ttl:
                del self._cache[ip]
        while self._cache and len(self._cache) >= self.max_cache_entries:
            # dicts keep insertion order, so the first key is the oldest entry
            del self._cache[next(iter(self._cache))]

    def clear_cache(self):
        """Clear the geolocation cache (useful for testing or if cache gets too large)"""
        self._cache.clear()
        log.info("Geolocation cache cleared")
