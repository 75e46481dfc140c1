"""
Decoding of relayed provider responses.

Providers answer with plain JSON, JSONP (``MusicJsonCallback({...})``) or,
behind allorigins-style relays, an envelope ``{contents, status: {url}}``
whose contents are again JSON or JSONP.
"""

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

JSONP_PATTERN = re.compile(r'^\s*[\w.]+\s*\((.*)\)\s*;?\s*$', re.DOTALL)

# Netease anti-scraping answer
BLOCKED_CODES = (-447,)


def decode_text(text: str) -> Optional[Any]:
    """Parse JSON, then JSONP. Returns None when neither works."""
    if not text or not isinstance(text, str):
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    match = JSONP_PATTERN.match(text)
    if match and match.group(1):
        try:
            return json.loads(match.group(1))
        except ValueError:
            logger.debug(f"JSONP body is not JSON: {text[:80]}")
    return None


def is_proxy_envelope(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and bool(data.get('contents'))
        and isinstance(data.get('status'), dict)
        and bool(data['status'].get('url'))
    )


def unwrap_proxy_envelope(data: Any) -> Optional[Any]:
    """Unwrap one relay envelope. Non-envelopes pass through untouched."""
    if not is_proxy_envelope(data):
        return data
    contents = data['contents']
    if isinstance(contents, str):
        return decode_text(contents)
    return contents


def decode_response(text: str) -> Optional[Any]:
    return unwrap_proxy_envelope(decode_text(text))


def is_garbage(data: Any) -> bool:
    """
    Sentinel payloads that mean "this relay got blocked", not "no data".
    """
    if isinstance(data, list) and data and data[0] in (-1, '-1'):
        return True
    if isinstance(data, dict) and data.get('code') in BLOCKED_CODES:
        return True
    return False
