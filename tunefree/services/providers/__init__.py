"""
Hand-written fallback resolvers, one per platform.
"""

import logging
from typing import TYPE_CHECKING, Dict, Type

from tunefree.core.config import enabled_platforms
from tunefree.services.providers.base import FallbackProvider
from tunefree.services.providers.kuwo import KuwoFallback
from tunefree.services.providers.netease import NeteaseFallback
from tunefree.services.providers.qq import QQFallback

if TYPE_CHECKING:
    from tunefree.services.proxy import ProxyChain

logger = logging.getLogger(__name__)

FALLBACK_CLASSES: Dict[str, Type[FallbackProvider]] = {
    'netease': NeteaseFallback,
    'qq': QQFallback,
    'kuwo': KuwoFallback,
}


def create_fallbacks(chain: 'ProxyChain') -> Dict[str, FallbackProvider]:
    """Fallbacks for every platform switched on by its ENABLE_* variable."""
    fallbacks = {}
    for platform in enabled_platforms():
        fallback_class = FALLBACK_CLASSES.get(platform)
        if fallback_class:
            fallbacks[platform] = fallback_class(chain)
            logger.info(f"{platform} fallback enabled")
    for platform in FALLBACK_CLASSES:
        if platform not in fallbacks:
            logger.info(f"{platform} fallback disabled")
    return fallbacks
