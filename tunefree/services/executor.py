import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from tunefree.core.expression import ExpressionError, compile_function, render_template, render_value
from tunefree.core.urls import fix_url
from tunefree.schemas.models import MethodDescriptor
from tunefree.services.extractors import extract_list, find_id, find_image
from tunefree.services.normalizer import resolve_cover
from tunefree.services.proxy import ProxyChain
from tunefree.services.tunehub import TuneHubClient

logger = logging.getLogger(__name__)

# Browser-protected, or would mark the relayed request as cross-origin
FORBIDDEN_HEADERS = {
    'user-agent', 'referer', 'host', 'origin', 'cookie',
    'sec-fetch-dest', 'sec-fetch-mode', 'sec-fetch-site',
    'connection', 'content-length',
}

NO_BODY_METHODS = ('GET', 'HEAD')


@dataclass
class PreparedRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


def filter_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {
        key: str(value) for key, value in headers.items()
        if key.lower() not in FORBIDDEN_HEADERS and value is not None
    }


def build_request(descriptor: MethodDescriptor, variables: Dict[str, Any]) -> PreparedRequest:
    """Render placeholders, append params, filter headers and repair the URL."""
    method = (descriptor.method or 'GET').upper()
    url = render_template(descriptor.url, variables, encode=True)

    if descriptor.params:
        params = [
            (key, render_template(str(value), variables))
            for key, value in descriptor.params.items()
            if value is not None
        ]
        if params:
            url += ('&' if '?' in url else '?') + urlencode(params)

    body = None
    if method not in NO_BODY_METHODS and descriptor.body is not None:
        body = render_value(descriptor.body, variables)

    return PreparedRequest(
        method=method,
        url=fix_url(url),
        headers=filter_headers(descriptor.headers),
        body=body,
    )


def _is_track_like(item: Any) -> bool:
    return isinstance(item, dict) and ('id' in item or 'name' in item)


def _has_cover(item: Dict) -> bool:
    return bool(find_image(item))


def backfill_covers(transformed: List[Any], raw: Any, platform: str) -> List[Any]:
    """
    Restore covers the transform dropped, from the untransformed payload.
    Matched by identity first, then by position.
    """
    raw_list = extract_list(raw)
    if not raw_list:
        return transformed

    by_id = {}
    for record in raw_list:
        if not isinstance(record, dict):
            continue
        inner = record['data'] if isinstance(record.get('data'), dict) else record
        for candidate in (find_id(inner, platform), find_id(inner, 'generic')):
            if candidate is not None:
                by_id.setdefault(candidate, inner)

    restored = 0
    for index, item in enumerate(transformed):
        if not _is_track_like(item) or _has_cover(item):
            continue
        item_id = item.get('id')
        match = by_id.get(str(item_id)) if item_id not in (None, '') else None
        if match is None and index < len(raw_list) and isinstance(raw_list[index], dict):
            positional = raw_list[index]
            match = positional['data'] if isinstance(positional.get('data'), dict) else positional
        if match is None:
            continue
        cover = resolve_cover(match, platform)
        if cover:
            item['pic'] = cover
            restored += 1

    if restored:
        logger.info(f"Backfilled {restored} covers dropped by the {platform} transform")
    return transformed


def apply_transform(source: str, raw: Any, platform: str) -> Any:
    """
    Run the descriptor's transform on a copy of ``raw``.
    Falls back to ``raw`` when the transform fails or returns nothing.
    """
    try:
        transformer = compile_function(source)
        result = transformer(copy.deepcopy(raw))
    except ExpressionError as e:
        logger.error(f"Transform error ({platform}): {e}")
        return raw

    if not result:
        logger.warning(f"Transform for {platform} returned an empty result, using raw payload")
        return raw

    if isinstance(result, list) and any(_is_track_like(item) and not _has_cover(item) for item in result):
        result = backfill_covers(result, raw, platform)
    return result


class MethodExecutor:
    """
    Executes server-supplied method descriptors against provider endpoints.

    Flow: fetch descriptor -> render request -> proxy chain -> transform.
    Returns None whenever no usable payload was obtained; callers treat
    None like an empty result when deciding to fall back.
    """

    def __init__(self, tunehub: TuneHubClient, chain: ProxyChain):
        self.tunehub = tunehub
        self.chain = chain

    async def execute(self, platform: str, function: str, variables: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        descriptor = await self.tunehub.get_method(platform, function)
        if descriptor is None:
            return None

        request = build_request(descriptor, variables or {})
        logger.info(f"Executing {platform}/{function}: {request.method} {request.url}")

        raw = await self.chain.fetch_json(
            request.url,
            method=request.method,
            headers=request.headers,
            json_body=request.body,
        )
        if raw is None:
            return None

        if descriptor.transform:
            return apply_transform(descriptor.transform, raw, platform)
        return raw
