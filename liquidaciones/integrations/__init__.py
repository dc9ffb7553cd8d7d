"""External integrations."""

from .order_resolver import (
    CachingOrderResolver,
    ChainOrderResolver,
    HttpOrderResolver,
    JsonFileOrderResolver,
    OrderResolver,
    StaticOrderResolver,
    build_order_resolver,
    close_resolver,
    map_order_info,
)

__all__ = [
    "CachingOrderResolver",
    "ChainOrderResolver",
    "HttpOrderResolver",
    "JsonFileOrderResolver",
    "OrderResolver",
    "StaticOrderResolver",
    "build_order_resolver",
    "close_resolver",
    "map_order_info",
]
