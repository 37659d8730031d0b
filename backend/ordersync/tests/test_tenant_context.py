"""Tests for tenant detection and duplicate checks.

REFERENCES:
    - ordersync/services/tenant_context.py
    - ordersync/services/dedup.py
"""

from datetime import datetime, timedelta

from ordersync.models import Client, ClientMapping, Order
from ordersync.services.dedup import find_existing_order
from ordersync.services.tenant_context import PipelineContext, detect_client, email_domain


def _client(db, name, **mapping):
    client = Client(name=name)
    db.add(client)
    db.flush()
    if mapping:
        db.add(ClientMapping(client_id=client.id, **mapping))
    db.commit()
    return client


class TestDetectClient:
    def test_integration_id_wins_over_email_domain(self, test_db_session):
        by_integration = _client(test_db_session, "A", integration_id="42")
        _client(test_db_session, "B", email_domain="shop.fr")

        detection = detect_client(test_db_session, "42", "someone@shop.fr")

        assert detection.client_id == by_integration.id
        assert detection.matched_on == "integration_id"

    def test_unmapped_integration_falls_back_to_domain(self, test_db_session):
        by_domain = _client(test_db_session, "B", email_domain="shop.fr", sub_client="Shop FR")

        detection = detect_client(test_db_session, "999", "Someone@SHOP.fr")

        assert detection.client_id == by_domain.id
        assert detection.sub_client == "Shop FR"
        assert detection.matched_on == "email_domain"

    def test_ambiguous_mapping_attributes_nobody(self, test_db_session):
        _client(test_db_session, "A", email_domain="marketplace.com")
        _client(test_db_session, "B", email_domain="marketplace.com")

        detection = detect_client(test_db_session, None, "buyer@marketplace.com")

        assert detection.client_id is None
        assert detection.ambiguous is True
        assert "Ambiguous" in detection.warning

    def test_same_client_twice_uses_oldest_mapping(self, test_db_session):
        client = _client(test_db_session, "A")
        test_db_session.add_all([
            ClientMapping(client_id=client.id, email_domain="shop.fr", sub_client="new",
                          created_at=datetime.utcnow()),
            ClientMapping(client_id=client.id, email_domain="shop.fr", sub_client="old",
                          created_at=datetime.utcnow() - timedelta(days=30)),
        ])
        test_db_session.commit()

        detection = detect_client(test_db_session, None, "x@shop.fr")

        assert detection.client_id == client.id
        assert detection.ambiguous is False
        assert detection.sub_client == "old"

    def test_inactive_mapping_is_ignored(self, test_db_session):
        _client(test_db_session, "A", email_domain="shop.fr", is_active=False)
        assert detect_client(test_db_session, None, "x@shop.fr").client_id is None

    def test_nothing_to_match(self, test_db_session):
        detection = detect_client(test_db_session, None, "not-an-email")
        assert detection.client_id is None
        assert detection.warning is None


def test_email_domain():
    assert email_domain("Jeanne@Shop.FR ") == "shop.fr"
    assert email_domain("no-at-sign") is None
    assert email_domain(None) is None


def test_for_order_resets_tenant_and_warnings():
    base = PipelineContext(auto_create_products=False)
    base.client_id = "c1"
    base.warnings.append("w")

    fresh = base.for_order()

    assert fresh.auto_create_products is False
    assert fresh.client_id is None
    assert fresh.warnings == []
    assert base.warnings == ["w"]


class TestFindExistingOrder:
    def test_matches_external_id(self, test_db_session):
        order = Order(external_id="ext-1", order_number="CMD-1")
        test_db_session.add(order)
        test_db_session.commit()

        check = find_existing_order(test_db_session, "ext-1", "OTHER")

        assert check.exists is True
        assert check.order_id == order.id
        assert check.matched_on == "external_id"

    def test_matches_order_number_alone(self, test_db_session):
        order = Order(external_id="ext-1", order_number="CMD-1")
        test_db_session.add(order)
        test_db_session.commit()

        check = find_existing_order(test_db_session, "ext-different", "CMD-1")

        assert check.exists is True
        assert check.matched_on == "order_number"

    def test_order_number_is_scoped_to_client(self, test_db_session):
        a = _client(test_db_session, "A")
        b = _client(test_db_session, "B")
        test_db_session.add(Order(external_id="ext-1", order_number="1001", client_id=a.id))
        test_db_session.commit()

        assert find_existing_order(test_db_session, "ext-2", "1001", client_id=b.id).exists is False
        assert find_existing_order(test_db_session, "ext-2", "1001", client_id=a.id).exists is True

    def test_no_match(self, test_db_session):
        assert find_existing_order(test_db_session, "ext-9", "CMD-9").exists is False
