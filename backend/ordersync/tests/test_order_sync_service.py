"""End-to-end tests for the order sync pipeline.

WHAT: process_order / process_batch / reattribute_order against an
      in-memory database: stock reservation, idempotence, partial failure,
      tenant-aware sender attribution and cancelled orders
WHY: These are the guarantees the warehouse relies on; a replayed webhook
     or import must never reserve stock twice
REFERENCES:
    - ordersync/services/order_sync_service.py
"""

from uuid import uuid4

import pytest

from ordersync.errors import BatchPayloadError
from ordersync.models import (
    CarrierSelectionStatusEnum,
    ClientMapping,
    LineStatusEnum,
    Order,
    OrderLine,
    OrderStatusEnum,
    Product,
    StockReservation,
)
from ordersync.services import order_sync_service
from ordersync.services.order_sync_service import process_batch, process_order, reattribute_order


class TestProcessOrder:
    def test_reserves_stock_and_is_ready_to_pick(self, test_db_session, make_product, ctx, payload_factory):
        product = make_product("SKU-1", stock=5)

        result = process_order(test_db_session, payload_factory("CMD-1", "SKU-1", 3), ctx)

        assert result.success is True
        assert result.created is True
        assert result.status == OrderStatusEnum.ready_to_pick.value

        order = test_db_session.get(Order, result.order_id)
        assert order.delivery_country_code == "FR"
        assert order.incoterm == "DDP"
        assert order.carrier_selection_status == CarrierSelectionStatusEnum.pending
        assert len(order.lines) == 1
        assert order.lines[0].status == LineStatusEnum.reserved
        assert order.lines[0].quantity == 3

        test_db_session.refresh(product)
        assert product.stock_available == 2
        assert test_db_session.query(StockReservation).filter_by(order_id=order.id).one().quantity == 3

    def test_insufficient_stock_awaits_restock(self, test_db_session, make_product, ctx, payload_factory):
        product = make_product("SKU-1", stock=1)

        result = process_order(test_db_session, payload_factory("CMD-2", "SKU-1", 3), ctx)

        assert result.status == OrderStatusEnum.awaiting_restock.value
        line = test_db_session.query(OrderLine).one()
        assert line.status == LineStatusEnum.stock_insufficient
        test_db_session.refresh(product)
        assert product.stock_available == 1
        assert test_db_session.query(StockReservation).count() == 0

    def test_replay_is_idempotent(self, test_db_session, make_product, ctx, payload_factory):
        product = make_product("SKU-1", stock=5)
        payload = payload_factory("CMD-1", "SKU-1", 3)

        first = process_order(test_db_session, payload, ctx)
        second = process_order(test_db_session, payload, ctx)

        assert first.created is True
        assert second.success is True
        assert second.already_exists is True
        assert second.created is False
        assert second.order_id == first.order_id
        assert test_db_session.query(Order).count() == 1
        assert test_db_session.query(OrderLine).count() == 1
        test_db_session.refresh(product)
        assert product.stock_available == 2

    def test_same_order_number_new_external_id_is_duplicate(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=5)
        process_order(test_db_session, payload_factory("CMD-1"), ctx)

        result = process_order(test_db_session, payload_factory("CMD-1", id="another-external-id"), ctx)

        assert result.already_exists is True
        assert test_db_session.query(Order).count() == 1

    def test_unknown_sku_is_created_and_awaits_restock(self, test_db_session, ctx, payload_factory):
        result = process_order(test_db_session, payload_factory("CMD-3", "BRAND-NEW", 1), ctx)

        assert result.status == OrderStatusEnum.awaiting_restock.value
        assert result.lines["products_created"] == 1
        product = test_db_session.query(Product).filter_by(reference="BRAND-NEW").one()
        assert product.created_during_ingestion is True
        assert product.stock_available == 0

    def test_order_without_lines_is_ready_to_pick(self, test_db_session, ctx, payload_factory):
        result = process_order(test_db_session, payload_factory("CMD-E", order_items=[]), ctx)

        assert result.created is True
        assert result.status == OrderStatusEnum.ready_to_pick.value
        assert test_db_session.query(OrderLine).count() == 0

    def test_nested_shipping_address_end_to_end(self, test_db_session, make_product, ctx):
        product = make_product("PROD-001", stock=5)
        payload = {
            "id": "99",
            "order_number": "CMD-1",
            "shipping_address": {
                "name": "Acme",
                "address": "1 Rue X",
                "city": "Lyon",
                "postal_code": "69000",
                "country": "France",
            },
            "order_items": [{"sku": "PROD-001", "name": "Widget", "quantity": 3}],
        }

        result = process_order(test_db_session, payload, ctx)

        assert result.created is True
        assert result.status == OrderStatusEnum.ready_to_pick.value
        order = test_db_session.get(Order, result.order_id)
        assert order.external_id == "99"
        assert order.delivery_country_code == "FR"
        assert order.delivery_city == "Lyon"
        assert [(line.product_reference, line.quantity, line.status) for line in order.lines] == [
            ("PROD-001", 3, LineStatusEnum.reserved),
        ]
        test_db_session.refresh(product)
        assert product.stock_available == 2
        assert test_db_session.query(StockReservation).filter_by(order_id=order.id).one().quantity == 3

    def test_invalid_payload_is_a_failed_result(self, test_db_session, ctx):
        result = process_order(test_db_session, {"name": "no identifiers"}, ctx)

        assert result.success is False
        assert "neither an id nor an order number" in result.error
        assert test_db_session.query(Order).count() == 0

    def test_unexpected_error_rolls_back_order(self, test_db_session, make_product, ctx, payload_factory, monkeypatch):
        make_product("SKU-1", stock=5)
        captured = []

        def broken_attribution(db, order, mapping_sender_config_id=None):
            raise RuntimeError("attribution exploded")

        monkeypatch.setattr(order_sync_service, "attribute_sender", broken_attribution)
        monkeypatch.setattr(order_sync_service, "capture_exception", lambda e, extra=None: captured.append(e))

        result = process_order(test_db_session, payload_factory("CMD-4", "SKU-1", 2), ctx)

        assert result.success is False
        assert "attribution exploded" in result.error
        assert len(captured) == 1
        assert test_db_session.query(Order).count() == 0
        assert test_db_session.query(Product).filter_by(reference="SKU-1").one().stock_available == 5

    def test_tenant_and_sender_attributed(self, test_db_session, tenant, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=5)

        result = process_order(test_db_session, payload_factory("CMD-5"), ctx)

        order = test_db_session.get(Order, result.order_id)
        assert order.client_id == tenant["client"].id
        assert order.sub_client == "Shop FR"
        assert order.sender_config_id == tenant["default_sender"].id
        assert result.warnings == []

    def test_missing_sender_is_a_warning_not_a_failure(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=5)

        result = process_order(test_db_session, payload_factory("CMD-6"), ctx)

        assert result.success is True
        assert any("No client detected" in w for w in result.warnings)
        order = test_db_session.get(Order, result.order_id)
        assert order.sender_config_id is None
        assert order.attribution_warning

    def test_cancelled_order_archives_existing(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=5)
        created = process_order(test_db_session, payload_factory("CMD-7"), ctx)

        result = process_order(test_db_session, payload_factory("CMD-7", status="cancelled"), ctx)

        assert result.already_exists is True
        assert result.status == OrderStatusEnum.archived.value
        assert test_db_session.get(Order, created.order_id).status == OrderStatusEnum.archived

    def test_cancelled_unknown_order_is_stored_archived_without_lines(self, test_db_session, make_product, ctx, payload_factory):
        product = make_product("SKU-1", stock=5)

        result = process_order(test_db_session, payload_factory("CMD-8", status="cancelled"), ctx)

        assert result.status == OrderStatusEnum.archived.value
        assert test_db_session.query(OrderLine).count() == 0
        test_db_session.refresh(product)
        assert product.stock_available == 5


class TestProcessBatch:
    def test_partial_failure_is_isolated(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=10)
        payloads = [
            payload_factory("CMD-1", "SKU-1", 1),
            "not an order",
            payload_factory("CMD-3", "SKU-1", 2),
        ]

        summary = process_batch(test_db_session, payloads, ctx)

        assert summary.total == 3
        assert summary.processed == 2
        assert summary.errors == 1
        assert summary.success is False
        assert [r.success for r in summary.results] == [True, False, True]
        assert len(summary.created_order_ids) == 2
        assert test_db_session.query(Order).count() == 2

    def test_order_without_identifiers_fails_alone(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=10)
        anonymous = payload_factory("CMD-2", "SKU-1", 4)
        del anonymous["id"]
        del anonymous["order_number"]

        summary = process_batch(
            test_db_session, [payload_factory("CMD-1", "SKU-1", 1), anonymous, payload_factory("CMD-3", "SKU-1", 2)], ctx,
        )

        assert [r.success for r in summary.results] == [True, False, True]
        assert "neither an id nor an order number" in summary.results[1].error
        assert summary.processed == 2
        assert summary.errors == 1
        assert test_db_session.query(Product).filter_by(reference="SKU-1").one().stock_available == 7
        assert test_db_session.query(StockReservation).count() == 2

    def test_existing_orders_are_counted(self, test_db_session, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=10)
        process_batch(test_db_session, [payload_factory("CMD-1", "SKU-1", 1)], ctx)

        summary = process_batch(
            test_db_session, [payload_factory("CMD-1", "SKU-1", 1), payload_factory("CMD-2", "SKU-1", 1)], ctx,
        )

        assert summary.processed == 1
        assert summary.existing == 1
        assert summary.success is True
        assert len(summary.created_order_ids) == 1

    @pytest.mark.parametrize("payloads", [None, [], {"orders": []}, "CMD-1"])
    def test_invalid_batch(self, test_db_session, ctx, payloads):
        with pytest.raises(BatchPayloadError):
            process_batch(test_db_session, payloads, ctx)


class TestReattributeOrder:
    def test_picks_up_mapping_added_after_import(self, test_db_session, tenant, make_product, ctx, payload_factory):
        make_product("SKU-1", stock=5)
        payload = payload_factory("CMD-9", email="buyer@late-mapping.fr")
        result = process_order(test_db_session, payload, ctx)
        order = test_db_session.get(Order, result.order_id)
        assert order.client_id is None

        test_db_session.add(ClientMapping(
            client_id=tenant["client"].id,
            email_domain="late-mapping.fr",
            sender_config_id=tenant["brand_sender"].id,
        ))
        test_db_session.commit()

        again = reattribute_order(test_db_session, order.id, ctx)

        test_db_session.refresh(order)
        assert again.success is True
        assert order.client_id == tenant["client"].id
        assert order.sender_config_id == tenant["brand_sender"].id
        assert order.carrier_selection_status == CarrierSelectionStatusEnum.pending
        assert order.carrier_selection_attempts == 0
        assert order.status == OrderStatusEnum.ready_to_pick

    def test_unknown_order(self, test_db_session, ctx):
        with pytest.raises(LookupError):
            reattribute_order(test_db_session, uuid4(), ctx)
