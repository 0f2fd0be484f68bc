"""
Share link encoding: <viewer-base-url>/track/<trip_id>.
"""

import re
import secrets
import time
from typing import Optional
from urllib.parse import urlsplit

from django.conf import settings

from ..exceptions import InvalidTripId

TRIP_ID_PATTERN = re.compile(r'[A-Za-z0-9_-]{1,90}')
TRACK_SEGMENT = 'track'


def generate_trip_id() -> str:
    """
    Return a fresh trip id: millisecond timestamp plus 96 random bits.

    Ids contain only URL-safe characters and never the path separator.
    """
    return f"trip_{int(time.time() * 1000)}_{secrets.token_hex(12)}"


def validate_trip_id(trip_id) -> str:
    if not isinstance(trip_id, str) or not TRIP_ID_PATTERN.fullmatch(trip_id):
        raise InvalidTripId(f"Malformed trip id: {trip_id!r}")
    return trip_id


class LinkCodec:
    """Encodes trip ids into viewer URLs and back."""

    def __init__(self, base_url: Optional[str] = None):
        base_url = base_url if base_url is not None else settings.TRIP_SHARE_BASE_URL
        self.base_url = base_url.rstrip('/')

    def generate_share_link(self, trip_id: str) -> str:
        validate_trip_id(trip_id)
        return f"{self.base_url}/{TRACK_SEGMENT}/{trip_id}"

    def parse_share_link(self, url: str) -> str:
        """
        Extract the trip id from a share link.

        Accepts any host, so links survive a change of viewer base URL, but
        the path must end in /track/<trip_id>.

        Raises:
            InvalidTripId: If the URL is not a share link or the id is malformed
        """
        if not isinstance(url, str):
            raise InvalidTripId(f"Not a share link: {url!r}")

        segments = [segment for segment in urlsplit(url).path.split('/') if segment]
        if len(segments) < 2 or segments[-2] != TRACK_SEGMENT:
            raise InvalidTripId(f"Not a share link: {url!r}")

        return validate_trip_id(segments[-1])
