"""Turn an IPTV M3U/M3U8 channel list into channel records for display."""

import logging
import re
from typing import List, Optional

from models import Channel

logger = logging.getLogger(__name__)

EXTINF_PREFIX = "#EXTINF:"
DEFAULT_CHANNEL_NAME = "Unnamed channel"

TVG_LOGO_RE = re.compile(r'tvg-logo="([^"]*)"', re.IGNORECASE)
GROUP_TITLE_RE = re.compile(r'group-title="([^"]*)"', re.IGNORECASE)


def _parse_extinf(line: str) -> Channel:
    # #EXTINF:-1 tvg-logo="..." group-title="...",Channel Name
    comma_index = line.find(',')
    logo = ""
    group = ""
    if comma_index != -1:
        name = line[comma_index + 1:].strip()
        attributes = line[len(EXTINF_PREFIX):comma_index]
        logo_match = TVG_LOGO_RE.search(attributes)
        if logo_match:
            logo = logo_match.group(1)
        group_match = GROUP_TITLE_RE.search(attributes)
        if group_match:
            group = group_match.group(1)
    else:
        name = line[len(EXTINF_PREFIX):].strip()

    return Channel(name=name or DEFAULT_CHANNEL_NAME, url="", logo=logo, group=group)


def parse_channels(text: str) -> List[Channel]:
    channels: List[Channel] = []
    pending: Optional[Channel] = None

    for line in text.split('\n'):
        stripped = line.strip()
        if stripped.startswith(EXTINF_PREFIX):
            pending = _parse_extinf(stripped)
        elif pending is not None and stripped and not stripped.startswith('#'):
            if '://' in stripped:
                pending.url = stripped
                channels.append(pending)
            else:
                logger.warning(f"Ignoring line that does not look like a URL: {stripped}")
            pending = None

    return channels
