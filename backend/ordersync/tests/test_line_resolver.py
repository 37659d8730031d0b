"""Tests for product resolution, stock reservation and aggregate order status.

WHAT: resolve_product (SKU, EAN, lazy creation), reserve_stock (all or
      nothing), process_lines (sequential lines, per-line isolation) and
      compute_order_status (most restrictive outcome wins)
REFERENCES:
    - ordersync/services/line_resolver.py
    - ordersync/services/stock_service.py
"""

from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from ordersync.errors import ProductResolutionError
from ordersync.models import (
    LineStatusEnum,
    Order,
    OrderLine,
    OrderStatusEnum,
    Product,
    ProductEnrichmentStatusEnum,
    StockReservation,
)
from ordersync.services import line_resolver
from ordersync.services.line_resolver import compute_order_status, process_lines, resolve_product
from ordersync.services.payloads import CanonicalLine
from ordersync.services.stock_service import get_available_stock, reserve_stock


@pytest.fixture
def order(test_db_session):
    """Flushed order header, as the pipeline leaves it before lines run."""
    order = Order(external_id="ext-L1", order_number="L-1", delivery_country_code="FR")
    test_db_session.add(order)
    test_db_session.flush()
    return order


@pytest.fixture
def failing_product_insert(test_db_session, monkeypatch):
    """Make every flush that inserts a Product fail like a constraint violation."""
    real_flush = test_db_session.flush

    def flush(*args, **kwargs):
        if any(isinstance(obj, Product) for obj in test_db_session.new):
            raise IntegrityError("INSERT INTO products", {}, Exception("constraint failed"))
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(test_db_session, "flush", flush)


def _line(sku="SKU-1", quantity=1, **kwargs):
    return CanonicalLine(sku=sku, name=kwargs.pop("name", "Mug"), quantity=quantity, **kwargs)


# =============================================================================
# compute_order_status
# =============================================================================

class TestComputeOrderStatus:
    def test_all_reserved_is_ready_to_pick(self):
        statuses = [LineStatusEnum.reserved, LineStatusEnum.reserved]
        assert compute_order_status(statuses) == OrderStatusEnum.ready_to_pick

    def test_not_found_wins_over_insufficient(self):
        statuses = [LineStatusEnum.stock_insufficient, LineStatusEnum.product_not_found, LineStatusEnum.reserved]
        assert compute_order_status(statuses) == OrderStatusEnum.products_not_found

    @pytest.mark.parametrize("other", [LineStatusEnum.stock_insufficient, LineStatusEnum.error])
    def test_insufficient_or_error_awaits_restock(self, other):
        assert compute_order_status([LineStatusEnum.reserved, other]) == OrderStatusEnum.awaiting_restock

    def test_order_without_lines_is_ready_to_pick(self):
        assert compute_order_status([]) == OrderStatusEnum.ready_to_pick


# =============================================================================
# reserve_stock
# =============================================================================

class TestReserveStock:
    def test_reserves_and_writes_ledger(self, test_db_session, make_product, order):
        product = make_product("SKU-1", stock=5)

        result = reserve_stock(test_db_session, product.id, 3, order.id, origin_reference="L-1")

        assert result.success is True
        assert result.available_after == 2
        assert get_available_stock(test_db_session, product.id) == 2
        ledger = test_db_session.query(StockReservation).one()
        assert ledger.quantity == 3
        assert ledger.origin_reference == "L-1"

    def test_insufficient_changes_nothing(self, test_db_session, make_product, order):
        product = make_product("SKU-1", stock=1)

        result = reserve_stock(test_db_session, product.id, 3, order.id)

        assert result.success is False
        assert result.available_after == 1
        assert get_available_stock(test_db_session, product.id) == 1
        assert test_db_session.query(StockReservation).count() == 0

    def test_exact_quantity_reaches_zero(self, test_db_session, make_product, order):
        product = make_product("SKU-1", stock=2)

        assert reserve_stock(test_db_session, product.id, 2, order.id).success is True
        assert get_available_stock(test_db_session, product.id) == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, test_db_session, make_product, order, quantity):
        product = make_product("SKU-1", stock=5)
        with pytest.raises(ValueError):
            reserve_stock(test_db_session, product.id, quantity, order.id)


# =============================================================================
# resolve_product
# =============================================================================

class TestResolveProduct:
    def test_by_sku(self, test_db_session, make_product, ctx):
        product = make_product("SKU-1")
        resolution = resolve_product(test_db_session, _line("SKU-1"), ctx)
        assert resolution.product.id == product.id
        assert resolution.created is False

    def test_falls_back_to_ean(self, test_db_session, make_product, ctx):
        product = make_product("INTERNAL-9", ean="3760000000001")
        resolution = resolve_product(test_db_session, _line("SHOP-SKU", ean="3760000000001"), ctx)
        assert resolution.product.id == product.id

    def test_creates_missing_product_with_default_weight(self, test_db_session, ctx):
        resolution = resolve_product(test_db_session, _line("NEW-1", name="Teapot"), ctx)

        assert resolution.created is True
        product = resolution.product
        assert product.reference == "NEW-1"
        assert product.name == "Teapot"
        assert product.stock_available == 0
        assert product.created_during_ingestion is True
        assert product.enrichment_status == ProductEnrichmentStatusEnum.pending
        assert Decimal(str(product.unit_weight_kg)) == Decimal("0.5")

    def test_creation_disabled(self, test_db_session, ctx):
        strict = replace(ctx, auto_create_products=False)
        with pytest.raises(ProductResolutionError) as exc_info:
            resolve_product(test_db_session, _line("NEW-1"), strict)
        assert exc_info.value.sku == "NEW-1"

    def test_blank_sku(self, test_db_session, ctx):
        with pytest.raises(ProductResolutionError, match="no SKU"):
            resolve_product(test_db_session, _line("  "), ctx)

    def test_insert_failure_is_a_resolution_error(self, test_db_session, ctx, failing_product_insert):
        with pytest.raises(ProductResolutionError) as exc_info:
            resolve_product(test_db_session, _line("NEW-1"), ctx)

        assert exc_info.value.sku == "NEW-1"
        assert "IntegrityError" in exc_info.value.message
        assert test_db_session.query(Product).filter_by(reference="NEW-1").count() == 0


# =============================================================================
# process_lines
# =============================================================================

class TestProcessLines:
    def test_same_sku_twice_sees_remaining_stock(self, test_db_session, make_product, order, ctx):
        product = make_product("SKU-1", stock=5)

        summary = process_lines(test_db_session, order, [_line("SKU-1", 3), _line("SKU-1", 3)], ctx)

        assert summary.statuses == [LineStatusEnum.reserved, LineStatusEnum.stock_insufficient]
        assert summary.reserved == 1
        assert summary.insufficient == 1
        assert get_available_stock(test_db_session, product.id) == 2

    def test_unknown_sku_with_creation_disabled(self, test_db_session, order, ctx):
        strict = replace(ctx, auto_create_products=False)

        summary = process_lines(test_db_session, order, [_line("GHOST", 1)], strict)

        assert summary.not_found == 1
        line = test_db_session.query(OrderLine).one()
        assert line.status == LineStatusEnum.product_not_found
        assert line.product_id is None
        assert "GHOST" in line.error_message

    def test_lazily_created_product_has_no_stock(self, test_db_session, order, ctx):
        summary = process_lines(test_db_session, order, [_line("NEW-1", 1)], ctx)

        assert summary.products_created == 1
        assert summary.created_product_ids == [test_db_session.query(Product).filter_by(reference="NEW-1").one().id]
        assert summary.statuses == [LineStatusEnum.stock_insufficient]
        assert compute_order_status(summary.statuses) == OrderStatusEnum.awaiting_restock

    def test_failing_line_is_isolated(self, test_db_session, make_product, order, ctx, monkeypatch):
        make_product("SKU-1", stock=5)
        make_product("SKU-2", stock=5)
        real_process_line = line_resolver._process_line

        def flaky(db, order_, line, ctx_):
            if line.sku == "SKU-2":
                raise RuntimeError("disk on fire")
            return real_process_line(db, order_, line, ctx_)

        monkeypatch.setattr(line_resolver, "_process_line", flaky)

        summary = process_lines(test_db_session, order, [_line("SKU-1", 1), _line("SKU-2", 1)], ctx)

        assert summary.statuses == [LineStatusEnum.reserved, LineStatusEnum.error]
        assert summary.errors == 1
        assert "disk on fire" in summary.first_error
        lines = test_db_session.query(OrderLine).order_by(OrderLine.product_reference).all()
        assert [line.status for line in lines] == [LineStatusEnum.reserved, LineStatusEnum.error]
        assert test_db_session.query(Product).filter(Product.reference == "SKU-2").one().stock_available == 5

    def test_line_snapshots_price_and_weight(self, test_db_session, make_product, order, ctx):
        make_product("SKU-1", stock=5, weight=Decimal("0.750"))

        process_lines(test_db_session, order, [_line("SKU-1", 2, unit_price=Decimal("10.00"))], ctx)

        line = test_db_session.query(OrderLine).one()
        assert Decimal(str(line.line_value)) == Decimal("20.00")
        assert Decimal(str(line.unit_weight_kg)) == Decimal("0.750")

    def test_failed_product_insert_marks_line_not_found(self, test_db_session, make_product, order, ctx,
                                                        failing_product_insert):
        make_product("SKU-1", stock=5)

        summary = process_lines(test_db_session, order, [_line("SKU-1", 1), _line("NEW-1", 1)], ctx)

        assert summary.statuses == [LineStatusEnum.reserved, LineStatusEnum.product_not_found]
        assert summary.not_found == 1
        assert summary.created_product_ids == []
        assert compute_order_status(summary.statuses) == OrderStatusEnum.products_not_found
        line = test_db_session.query(OrderLine).filter_by(product_reference="NEW-1").one()
        assert line.product_id is None
        assert "NEW-1" in line.error_message
