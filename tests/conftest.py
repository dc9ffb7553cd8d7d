"""Shared fixtures for the settlement reconciliation tests."""

import pytest

from helpers import CountingResolver
from liquidaciones.models import OrderInfo


@pytest.fixture
def organizer_orders():
    orders = {
        order_id: OrderInfo(order_id=order_id, organizer_id="org-1", organizer_name="Productora Sur")
        for order_id in ("O1", "O2", "O3", "O4", "65a1b2c3d4e5f67890123456")
    }
    orders["65a1b2c3d4e5f67890123457"] = OrderInfo(
        order_id="65a1b2c3d4e5f67890123457",
        organizer_id="org-2",
        organizer_name="Eventos Norte",
        event_id="ev-9",
    )
    return orders


@pytest.fixture
def resolver(organizer_orders):
    return CountingResolver(organizer_orders)
