"""
Order resolver: maps an order id to the organizer entitled to its funds.

Every implementation honours the same contract: ``resolve`` returns an
``OrderInfo`` or ``None`` and never raises. Transport, HTTP and payload
problems are logged and reported as ``None`` so the matcher can classify
the line as ``no_organizer`` instead of failing the run.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import Settings, get_settings
from ..errors import OrderResolverError
from ..models import OrderInfo

logger = structlog.get_logger()

_RESOLVE_ENDPOINT_RE = re.compile(r"/resolve$|/getorderbyid$", re.IGNORECASE)
DEFAULT_RESOLVE_PATHS = ("/api/app/order/resolve", "/app/order/resolve")


class OrderResolver(Protocol):
    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        ...


def map_order_info(order_id: str, payload: Any) -> Optional[OrderInfo]:
    """
    Build OrderInfo from an API or file record.

    The record may be wrapped in ``info``, ``data`` or ``result`` and may use
    camelCase, snake_case or a nested ``organizer`` object. Returns None when
    organizer id or name is missing.
    """
    if not isinstance(payload, dict):
        return None
    info = payload.get("info") or payload.get("data") or payload.get("result") or payload
    if not isinstance(info, dict):
        return None

    organizer = info.get("organizer") if isinstance(info.get("organizer"), dict) else {}
    event = info.get("event") if isinstance(info.get("event"), dict) else {}

    organizer_id = info.get("organizerId") or organizer.get("id") or info.get("organizer_id")
    organizer_name = info.get("organizerName") or organizer.get("name") or info.get("organizer_name")
    event_id = info.get("eventId") or event.get("id") or info.get("event_id")
    resolved_order_id = info.get("orderId") or info.get("_id") or order_id

    if not organizer_id or not organizer_name:
        return None

    return OrderInfo(
        order_id=str(resolved_order_id),
        organizer_id=str(organizer_id),
        organizer_name=str(organizer_name),
        event_id=str(event_id) if event_id else None,
    )


async def close_resolver(resolver: OrderResolver) -> None:
    """Close a resolver if it exposes ``close``; plain resolvers hold nothing."""
    close = getattr(resolver, "close", None)
    if close is not None:
        await close()


class HttpOrderResolver:
    """
    Resolver backed by the ticketing platform's order API.

    Endpoint selection from the configured base URL:
    - contains ``{id}``: GET the templated URL
    - ends in ``/resolve`` or ``/getorderbyid``: POST ``{"id": ...}`` to it
    - otherwise: POST to the conventional resolve paths, then GET ``/orders/{id}``
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_wait = retry_wait
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> Optional["HttpOrderResolver"]:
        settings = settings or get_settings()
        if not settings.orders_api_base_url:
            return None
        return cls(
            base_url=settings.orders_api_base_url,
            token=settings.orders_api_token,
            timeout=settings.orders_api_timeout_seconds,
            max_attempts=settings.orders_api_max_attempts,
        )

    @property
    def auth_headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this resolver created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """
        One request with retries on transport errors.

        Raises:
            OrderResolverError: non-2xx status or a body that is not JSON.
        """
        client = await self._get_client()
        headers = {**self.auth_headers, **kwargs.pop("headers", {})}

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, headers=headers, **kwargs)

        if response.status_code >= 400:
            raise OrderResolverError(
                f"Order API error: {response.status_code}",
                status_code=response.status_code,
                details=response.text[:300],
            )
        try:
            return response.json()
        except ValueError as e:
            raise OrderResolverError("Order API returned invalid JSON", response.status_code) from e

    async def _try(self, method: str, url: str, order_id: str) -> Optional[OrderInfo]:
        kwargs: Dict[str, Any] = {}
        if method == "POST":
            kwargs["json"] = {"id": order_id}
        try:
            payload = await self._request(method, url, **kwargs)
        except OrderResolverError as e:
            logger.debug("Order lookup rejected", url=url, order_id=order_id, status=e.status_code)
            return None

        info = map_order_info(order_id, payload)
        if info is None:
            logger.debug("Order payload without organizer", url=url, order_id=order_id)
        return info

    def candidate_requests(self, order_id: str) -> List[tuple]:
        """(method, url) pairs tried in order for one order id."""
        if "{id}" in self.base_url:
            return [("GET", self.base_url.replace("{id}", order_id))]
        if _RESOLVE_ENDPOINT_RE.search(self.base_url):
            return [("POST", self.base_url)]

        requests = [("POST", f"{self.base_url}{path}") for path in DEFAULT_RESOLVE_PATHS]
        orders_base = self.base_url if self.base_url.endswith("/orders") else f"{self.base_url}/orders"
        requests.append(("GET", f"{orders_base}/{order_id}"))
        return requests

    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        try:
            for method, url in self.candidate_requests(order_id):
                info = await self._try(method, url, order_id)
                if info is not None:
                    return info
        except httpx.HTTPError as e:
            logger.warning("Order API unreachable", order_id=order_id, error=str(e))
            return None

        logger.debug("No organizer from order API", order_id=order_id)
        return None


class JsonFileOrderResolver:
    """
    Resolver backed by a local ``orders.json``.
    The file holds either a list of order records or a mapping id -> record.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._orders: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._orders is not None:
            return self._orders

        self._orders = {}
        if not self.path.exists():
            return self._orders

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable orders file", path=str(self.path), error=str(e))
            return self._orders

        if isinstance(data, list):
            self._orders = {
                str(item.get("orderId") or item.get("order_id")): item
                for item in data
                if isinstance(item, dict) and (item.get("orderId") or item.get("order_id"))
            }
        elif isinstance(data, dict):
            self._orders = {str(k): v for k, v in data.items()}

        logger.debug("Loaded orders file", path=str(self.path), orders=len(self._orders))
        return self._orders

    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        record = self._load().get(order_id)
        if record is None:
            return None
        return map_order_info(order_id, record)


class StaticOrderResolver:
    """In-memory resolver over a fixed mapping; useful for CLI overrides and tests."""

    def __init__(self, orders: Dict[str, OrderInfo]):
        self.orders = dict(orders)

    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        return self.orders.get(order_id)


class ChainOrderResolver:
    """First resolver returning an organizer wins."""

    def __init__(self, resolvers: Sequence[OrderResolver]):
        self.resolvers = list(resolvers)

    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        for resolver in self.resolvers:
            info = await resolver.resolve(order_id)
            if info is not None:
                return info
        return None

    async def close(self):
        """Close every resolver in the chain that holds resources."""
        for resolver in self.resolvers:
            await close_resolver(resolver)


class CachingOrderResolver:
    """
    Memoizes successful lookups by order id for the life of the instance.
    Misses are not cached so a later run can pick up newly created orders.
    """

    def __init__(self, inner: OrderResolver):
        self.inner = inner
        self._cache: Dict[str, OrderInfo] = {}
        self.hits = 0
        self.misses = 0

    async def resolve(self, order_id: str) -> Optional[OrderInfo]:
        cached = self._cache.get(order_id)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        info = await self.inner.resolve(order_id)
        if info is not None:
            self._cache[order_id] = info
        return info

    def clear(self) -> None:
        self._cache.clear()

    async def close(self):
        await close_resolver(self.inner)


def build_order_resolver(
    settings: Optional[Settings] = None,
    orders_file: Optional[Path] = None,
) -> CachingOrderResolver:
    """API resolver (when configured) backed by the local orders file, memoized."""
    settings = settings or get_settings()
    resolvers: List[OrderResolver] = []

    http_resolver = HttpOrderResolver.from_settings(settings)
    if http_resolver is not None:
        resolvers.append(http_resolver)
    resolvers.append(JsonFileOrderResolver(orders_file or settings.orders_file))

    return CachingOrderResolver(ChainOrderResolver(resolvers))
