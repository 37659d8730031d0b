"""Tests for parcel → order tracking updates.

REFERENCES:
    - ordersync/services/tracking_service.py
"""

import asyncio

import pytest

from ordersync.models import Order, OrderStatusEnum
from ordersync.services.sendcloud_client import SendCloudAPIError
from ordersync.services.tracking_service import apply_tracking_update, map_parcel_status, refresh_missing_tracking


@pytest.fixture
def ready_order(test_db_session):
    order = Order(
        external_id="ext-T1",
        order_number="T-1",
        status=OrderStatusEnum.ready_to_pick,
        carrier_name="Colissimo",
    )
    test_db_session.add(order)
    test_db_session.commit()
    return order


def _parcel(status_id=None, **fields):
    parcel = {"id": 555, "external_order_id": "ext-T1", "order_number": "T-1"}
    if status_id is not None:
        parcel["status"] = {"id": status_id, "message": "..."}
    parcel.update(fields)
    return parcel


@pytest.mark.parametrize(
    "status_id, expected",
    [
        (1000, OrderStatusEnum.in_preparation),
        (1999, OrderStatusEnum.in_preparation),
        (2000, OrderStatusEnum.in_transit),
        (3000, OrderStatusEnum.delivered),
        (11, None),
        (None, None),
        ("garbage", None),
    ],
)
def test_map_parcel_status(status_id, expected):
    assert map_parcel_status(status_id) == expected


class TestApplyTrackingUpdate:
    def test_writes_tracking_fields_and_status(self, test_db_session, ready_order):
        parcel = _parcel(
            2000,
            tracking_number="6A123",
            tracking_url="https://track.example/6A123",
            carrier={"code": "colissimo", "name": "Colissimo Expert"},
            label={"label_printer": "https://labels.example/555.pdf"},
        )

        result = apply_tracking_update(test_db_session, parcel)

        assert result.found is True
        assert result.order_id == ready_order.id
        test_db_session.refresh(ready_order)
        assert ready_order.tracking_number == "6A123"
        assert ready_order.carrier_name == "Colissimo Expert"
        assert ready_order.label_url == "https://labels.example/555.pdf"
        assert ready_order.shipment_id == "555"
        assert ready_order.status == OrderStatusEnum.in_transit

    def test_empty_fields_do_not_blank_existing_values(self, test_db_session, ready_order):
        apply_tracking_update(test_db_session, _parcel(carrier=None, tracking_number=""))

        test_db_session.refresh(ready_order)
        assert ready_order.carrier_name == "Colissimo"

    def test_status_never_moves_backwards(self, test_db_session, ready_order):
        apply_tracking_update(test_db_session, _parcel(3000))
        result = apply_tracking_update(test_db_session, _parcel(2000))

        assert "status" not in result.updated_fields
        test_db_session.refresh(ready_order)
        assert ready_order.status == OrderStatusEnum.delivered

    def test_archived_order_keeps_status(self, test_db_session, ready_order):
        ready_order.status = OrderStatusEnum.archived
        test_db_session.commit()

        apply_tracking_update(test_db_session, _parcel(2000, tracking_number="6A999"))

        test_db_session.refresh(ready_order)
        assert ready_order.status == OrderStatusEnum.archived
        assert ready_order.tracking_number == "6A999"

    def test_falls_back_to_order_number(self, test_db_session, ready_order):
        result = apply_tracking_update(test_db_session, {"id": 1, "order_number": "T-1", "tracking_number": "X"})
        assert result.found is True

    def test_unknown_parcel_creates_nothing(self, test_db_session):
        result = apply_tracking_update(test_db_session, {"id": 9, "external_order_id": "nope", "order_number": "nope"})

        assert result.found is False
        assert test_db_session.query(Order).count() == 0


class FakeSendCloud:
    def __init__(self, parcels=None, failing=()):
        self.parcels = parcels or {}
        self.failing = set(failing)
        self.calls = []

    async def get_parcel_for_order(self, external_order_id):
        self.calls.append(external_order_id)
        if external_order_id in self.failing:
            raise SendCloudAPIError("HTTP 500", status_code=500)
        return self.parcels.get(external_order_id)


def test_refresh_missing_tracking(test_db_session):
    test_db_session.add_all([
        Order(external_id="a", order_number="A", status=OrderStatusEnum.ready_to_pick),
        Order(external_id="b", order_number="B", status=OrderStatusEnum.ready_to_pick),
        Order(external_id="c", order_number="C", status=OrderStatusEnum.ready_to_pick),
        Order(external_id="d", order_number="D", tracking_number="already"),
        Order(external_id="e", order_number="E", status=OrderStatusEnum.archived),
    ])
    test_db_session.commit()
    client = FakeSendCloud(
        parcels={"a": {"id": 1, "tracking_number": "TRK-A", "status": {"id": 1000}}},
        failing={"c"},
    )

    stats = asyncio.run(refresh_missing_tracking(test_db_session, client))

    assert sorted(client.calls) == ["a", "b", "c"]
    assert stats.total == 3
    assert stats.updated == 1
    assert stats.no_parcel == 1
    assert stats.errors == 1
    order_a = test_db_session.query(Order).filter_by(external_id="a").one()
    assert order_a.tracking_number == "TRK-A"
    assert order_a.status == OrderStatusEnum.in_preparation
