"""
Tests for the organizer lookup clients.
"""

import json

import httpx
import pytest

from helpers import CountingResolver
from liquidaciones.config import Settings
from liquidaciones.integrations.order_resolver import (
    CachingOrderResolver,
    ChainOrderResolver,
    HttpOrderResolver,
    JsonFileOrderResolver,
    StaticOrderResolver,
    build_order_resolver,
    map_order_info,
)
from liquidaciones.models import OrderInfo

ORDER_ID = "65a1b2c3d4e5f67890123456"


def organizer_payload(order_id=ORDER_ID):
    return {"info": {"orderId": order_id, "organizerId": "org-1", "organizerName": "Productora Sur"}}


def http_resolver(base_url, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpOrderResolver(base_url, client=client, retry_wait=0, **kwargs)


class TestMapOrderInfo:
    def test_camel_case_wrapped(self):
        info = map_order_info(ORDER_ID, organizer_payload())
        assert info == OrderInfo(ORDER_ID, "org-1", "Productora Sur")

    def test_nested_organizer_and_event(self):
        payload = {"data": {"organizer": {"id": 7, "name": "Eventos Norte"}, "event": {"id": "ev-9"}}}

        info = map_order_info("O2", payload)

        assert info.organizer_id == "7"
        assert info.organizer_name == "Eventos Norte"
        assert info.event_id == "ev-9"
        assert info.order_id == "O2"

    def test_snake_case(self):
        info = map_order_info("O3", {"organizer_id": "org-3", "organizer_name": "Sala Oeste"})
        assert info.organizer_id == "org-3"

    def test_missing_name_is_none(self):
        assert map_order_info("O1", {"organizerId": "org-1"}) is None

    def test_non_dict_is_none(self):
        assert map_order_info("O1", ["org-1"]) is None


class TestHttpConfiguration:
    def test_not_configured(self):
        assert HttpOrderResolver.from_settings(Settings(orders_api_base_url=None)) is None

    def test_candidate_requests_for_plain_base(self):
        resolver = HttpOrderResolver("https://api.example.com/orders")
        assert resolver.candidate_requests("O1") == [
            ("POST", "https://api.example.com/orders/api/app/order/resolve"),
            ("POST", "https://api.example.com/orders/app/order/resolve"),
            ("GET", "https://api.example.com/orders/O1"),
        ]


@pytest.mark.asyncio
class TestHttpOrderResolver:
    async def test_templated_url_uses_get(self):
        seen = []

        def handler(request):
            seen.append((request.method, str(request.url)))
            return httpx.Response(200, json=organizer_payload())

        resolver = http_resolver("https://api.example.com/orders/{id}", handler, token="secret")

        info = await resolver.resolve(ORDER_ID)

        assert info.organizer_id == "org-1"
        assert seen == [("GET", f"https://api.example.com/orders/{ORDER_ID}")]

    async def test_bearer_token_sent(self):
        headers = []

        def handler(request):
            headers.append(request.headers.get("Authorization"))
            return httpx.Response(200, json=organizer_payload())

        await http_resolver("https://api.example.com/orders/{id}", handler, token="secret").resolve(ORDER_ID)

        assert headers == ["Bearer secret"]

    async def test_resolve_endpoint_uses_post(self):
        bodies = []

        def handler(request):
            bodies.append((request.method, json.loads(request.content)))
            return httpx.Response(200, json=organizer_payload())

        resolver = http_resolver("https://api.example.com/app/order/resolve", handler)

        assert await resolver.resolve(ORDER_ID) is not None
        assert bodies == [("POST", {"id": ORDER_ID})]

    async def test_plain_base_tries_conventional_paths(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            if request.method == "GET":
                return httpx.Response(200, json=organizer_payload())
            return httpx.Response(404, json={"error": "not found"})

        resolver = http_resolver("https://api.example.com/", handler)

        info = await resolver.resolve(ORDER_ID)

        assert info.organizer_name == "Productora Sur"
        assert seen == [
            ("POST", "/api/app/order/resolve"),
            ("POST", "/app/order/resolve"),
            ("GET", f"/orders/{ORDER_ID}"),
        ]

    async def test_server_error_is_none(self):
        resolver = http_resolver(
            "https://api.example.com/orders/{id}",
            lambda request: httpx.Response(500, text="boom"),
        )
        assert await resolver.resolve(ORDER_ID) is None

    async def test_invalid_json_is_none(self):
        resolver = http_resolver(
            "https://api.example.com/orders/{id}",
            lambda request: httpx.Response(200, text="<html>"),
        )
        assert await resolver.resolve(ORDER_ID) is None

    async def test_transport_error_retried_then_none(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        resolver = http_resolver("https://api.example.com/orders/{id}", handler, max_attempts=3)

        assert await resolver.resolve(ORDER_ID) is None
        assert len(attempts) == 3

@pytest.mark.asyncio
class TestJsonFileOrderResolver:
    async def test_list_file(self, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text(json.dumps([
            {"orderId": ORDER_ID, "organizerId": "org-1", "organizerName": "Productora Sur"},
        ]), encoding="utf-8")

        resolver = JsonFileOrderResolver(path)

        assert (await resolver.resolve(ORDER_ID)).organizer_id == "org-1"
        assert await resolver.resolve("missing") is None

    async def test_mapping_file(self, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text(json.dumps({
            "O2": {"organizer": {"id": "org-2", "name": "Eventos Norte"}, "eventId": "ev-9"},
        }), encoding="utf-8")

        info = await JsonFileOrderResolver(path).resolve("O2")

        assert info.organizer_name == "Eventos Norte"
        assert info.event_id == "ev-9"

    async def test_missing_or_broken_file(self, tmp_path):
        assert await JsonFileOrderResolver(tmp_path / "absent.json").resolve("O1") is None

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert await JsonFileOrderResolver(broken).resolve("O1") is None


@pytest.mark.asyncio
class TestComposition:
    async def test_chain_first_hit_wins(self, organizer_orders):
        first = CountingResolver({})
        second = CountingResolver(organizer_orders)

        info = await ChainOrderResolver([first, second]).resolve("O1")

        assert info.organizer_id == "org-1"
        assert first.calls == second.calls == ["O1"]

    async def test_cache_keeps_hits_only(self, organizer_orders):
        inner = CountingResolver(organizer_orders)
        cache = CachingOrderResolver(inner)

        await cache.resolve("O1")
        await cache.resolve("O1")
        await cache.resolve("missing")
        await cache.resolve("missing")

        assert inner.calls == ["O1", "missing", "missing"]
        assert (cache.hits, cache.misses) == (1, 3)

    async def test_cache_clear(self, organizer_orders):
        inner = CountingResolver(organizer_orders)
        cache = CachingOrderResolver(inner)

        await cache.resolve("O1")
        cache.clear()
        await cache.resolve("O1")

        assert inner.calls == ["O1", "O1"]

    async def test_build_from_settings_uses_orders_file(self, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text(json.dumps({"O1": {"organizerId": "org-1", "organizerName": "Productora Sur"}}),
                        encoding="utf-8")
        settings = Settings(orders_api_base_url=None, orders_file=path)

        resolver = build_order_resolver(settings)

        assert (await resolver.resolve("O1")).organizer_id == "org-1"

    async def test_static(self, organizer_orders):
        assert (await StaticOrderResolver(organizer_orders).resolve("O4")).organizer_id == "org-1"

    async def test_close_reaches_http_client_through_wrappers(self, organizer_orders):
        http = HttpOrderResolver("https://api.example.com/orders/{id}")
        client = await http._get_client()
        resolver = CachingOrderResolver(ChainOrderResolver([http, StaticOrderResolver(organizer_orders)]))

        await resolver.close()

        assert client.is_closed

    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        http = HttpOrderResolver("https://api.example.com", client=client)
        resolver = CachingOrderResolver(ChainOrderResolver([http]))

        await resolver.close()

        assert not client.is_closed
        await client.aclose()
