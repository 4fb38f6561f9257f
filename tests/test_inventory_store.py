"""CMS inventory adapter request shapes and error handling."""

import asyncio
import json

import httpx
import pytest

from storepay.common.errors import InventoryStoreError
from storepay.services.inventory.store import CmsInventoryStore


def _store(settings, handler):
    return CmsInventoryStore(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_reads_stock_field(settings):
    """Stock is read from the record's Stock field."""

    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"id": "rec1", "fields": {"Name": "Apples", "Stock": 12}})

    assert asyncio.run(_store(settings, handler).get_stock("rec1")) == 12
    assert seen == ["/v0/app000000000000/Inventory/rec1"]


def test_missing_stock_field_reads_as_zero(settings):
    """A record without Stock counts as zero."""

    store = _store(settings, lambda request: httpx.Response(200, json={"id": "rec1", "fields": {"Name": "Pears"}}))

    assert asyncio.run(store.get_stock("rec1")) == 0


def test_unknown_product_is_none(settings):
    """A 404 means the product does not exist."""

    store = _store(settings, lambda request: httpx.Response(404, json={"error": "NOT_FOUND"}))

    assert asyncio.run(store.get_stock("nope")) is None


def test_server_error_raises(settings):
    """Server errors raise InventoryStoreError."""

    store = _store(settings, lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(InventoryStoreError):
        asyncio.run(store.get_stock("rec1"))


def test_write_sends_stock_and_audit_fields(settings):
    """Writes PATCH the new stock with the audit fields."""

    captured = {}

    def handler(request):
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "rec1", "fields": captured["body"]["fields"]})

    asyncio.run(_store(settings, handler).set_stock("rec1", 7, 3))

    fields = captured["body"]["fields"]
    assert captured["method"] == "PATCH"
    assert fields["Stock"] == 7
    assert fields["Last Order Quantity"] == 3
    assert fields["Last Updated"]


def test_write_failure_raises(settings):
    """Failed writes raise InventoryStoreError."""

    def handler(request):
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(InventoryStoreError):
        asyncio.run(_store(settings, handler).set_stock("rec1", 7, 3))
