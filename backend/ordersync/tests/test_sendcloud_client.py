"""Tests for the SendCloud client and the scheduled order pull.

WHAT: Pagination, retry/raise behaviour (httpx.MockTransport), v3 → v2
      fallback, SyncRun bookkeeping
REFERENCES:
    - ordersync/services/sendcloud_client.py
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from ordersync.errors import ExternalCallError
from ordersync.models import Order, SyncRun, SyncRunStatusEnum
from ordersync.services import sendcloud_client
from ordersync.services.sendcloud_client import (
    PAGE_SIZE,
    SendCloudAPIError,
    SendCloudClient,
    parcel_to_order_payload,
    sync_sendcloud_orders,
    sync_window_start,
)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    async def instant(_seconds):
        return None

    monkeypatch.setattr(sendcloud_client.asyncio, "sleep", instant)


def _client(handler):
    return SendCloudClient("pub", "secret", base_url="https://sc.test/api", transport=httpx.MockTransport(handler))


def _v3_order(n):
    return {
        "id": f"v3-{n}",
        "order_number": f"SC-{n}",
        "shipping_address": {"name": "Client", "city": "Lille", "postal_code": "59000", "country_code": "FR"},
        "order_items": [],
    }


class TestSendCloudClient:
    def test_requires_credentials(self):
        with pytest.raises(SendCloudAPIError):
            SendCloudClient("", "")

    def test_api_error_is_an_external_call_error(self):
        error = SendCloudAPIError("boom", status_code=502)
        assert isinstance(error, ExternalCallError)
        assert error.service == "sendcloud"
        assert error.status_code == 502
        assert error.message == "boom"

    def test_orders_are_paginated(self):
        pages = []

        def handler(request):
            assert request.headers["Authorization"].startswith("Basic ")
            page = int(request.url.params["page"])
            pages.append(page)
            count = PAGE_SIZE if page == 1 else 3
            return httpx.Response(200, json={"data": [_v3_order(f"{page}-{i}") for i in range(count)]})

        orders = asyncio.run(_client(handler).get_all_orders(datetime(2024, 1, 1)))

        assert pages == [1, 2]
        assert len(orders) == PAGE_SIZE + 3

    def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="not found")

        with pytest.raises(SendCloudAPIError) as exc_info:
            asyncio.run(_client(handler).get_parcel_for_order("ext-1"))

        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    def test_server_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"parcels": [{"id": 1}]})

        parcel = asyncio.run(_client(handler).get_parcel_for_order("ext-1"))

        assert parcel == {"id": 1}
        assert len(calls) == 3

    def test_gives_up_after_retries(self):
        with pytest.raises(SendCloudAPIError, match="after 3 attempts"):
            asyncio.run(_client(lambda request: httpx.Response(500)).get_all_parcels(datetime(2024, 1, 1)))


def test_parcel_to_order_payload():
    payload = parcel_to_order_payload({
        "id": 77,
        "name": "Paul",
        "country": {"iso_2": "BE"},
        "shipment": {"id": 8, "name": "bpost"},
        "label": {"label_printer": "https://labels/77"},
        "parcel_items": [{"sku": "A", "quantity": 1}],
    })

    assert payload["order_number"] == "PARCEL-77"
    assert payload["label_url"] == "https://labels/77"
    assert payload["parcel_items"] == [{"sku": "A", "quantity": 1}]


def test_sync_window_start():
    now = datetime(2024, 6, 1, 12, 0)
    since = datetime(2024, 5, 1)

    assert sync_window_start("full", since, now) == now - timedelta(days=90)
    assert sync_window_start("incremental", since, now) == since
    assert sync_window_start("incremental", None, now) == now - timedelta(minutes=5)


class TestSyncSendCloudOrders:
    def test_v3_orders_are_ingested(self, test_db_session, ctx):
        def handler(request):
            if request.url.path.endswith("/v3/orders"):
                return httpx.Response(200, json={"data": [_v3_order(1), _v3_order(2), _v3_order(1)]})
            raise AssertionError("v2 should not be called")

        response = asyncio.run(sync_sendcloud_orders(test_db_session, _client(handler), ctx))

        assert response.success is True
        assert response.strategy == "orders_v3"
        assert response.found == 2
        assert test_db_session.query(Order).count() == 2
        run = test_db_session.get(SyncRun, response.sync_run_id)
        assert run.status == SyncRunStatusEnum.success
        assert run.orders_created == 2
        assert run.mode == "incremental"

    def test_falls_back_to_v2_parcels(self, test_db_session, ctx):
        def handler(request):
            if request.url.path.endswith("/v3/orders"):
                return httpx.Response(403, text="v3 not enabled")
            return httpx.Response(200, json={"parcels": [{"id": 5, "order_number": "P-5", "country": "FR"}]})

        response = asyncio.run(sync_sendcloud_orders(test_db_session, _client(handler), ctx, mode="full"))

        assert response.strategy == "parcels_v2"
        assert response.found == 1
        assert test_db_session.query(Order).filter_by(order_number="P-5").count() == 1
        run = test_db_session.get(SyncRun, response.sync_run_id)
        assert run.mode == "full"
        assert "v3 orders" in run.error_message

    def test_nothing_reachable_is_an_error_run(self, test_db_session, ctx):
        response = asyncio.run(sync_sendcloud_orders(
            test_db_session, _client(lambda request: httpx.Response(401)), ctx, since=datetime(2024, 1, 1),
        ))

        assert response.success is False
        run = test_db_session.get(SyncRun, response.sync_run_id)
        assert run.status == SyncRunStatusEnum.error
        assert run.mode == "custom"
        assert run.finished_at is not None
