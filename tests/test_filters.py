"""Tests for subscription filter matching."""

from app.schemas import WebhookFilters
from app.services.webhook_dispatcher import matches_filters, order_total, payload_countries, product_category


def _order_data(total=1000, status="confirmed", buyer="SE", seller="NG", ship_to=None, category="agriculture"):
    order = {
        "id": "o1",
        "status": status,
        "pricing": {"total": total},
        "buyer": {"id": "b", "country": buyer},
        "seller": {"id": "s", "country": seller},
        "product": {"id": "p", "category": category},
    }
    if ship_to:
        order["shipping"] = {"shippingAddress": {"country": ship_to}}
    return {"order": order}


def test_no_filters_match_everything():
    assert matches_filters(None, {})
    assert matches_filters(WebhookFilters(), _order_data())


def test_min_order_value_boundary():
    filters = WebhookFilters(min_order_value=1000)
    assert matches_filters(filters, _order_data(total=1000))
    assert not matches_filters(filters, _order_data(total=999))


def test_order_total_fallback():
    assert order_total({"order": {"total": 250}}) == 250
    assert order_total({"order": {"pricing": {"total": "12.5"}}}) == 12.5
    assert order_total({"product": {"id": "p"}}) is None


def test_absent_value_does_not_reject():
    filters = WebhookFilters(min_order_value=1000, order_statuses=["confirmed"], payment_types=["advance"])
    assert matches_filters(filters, {"product": {"id": "p"}})


def test_entity_without_the_filtered_field_is_rejected():
    assert not matches_filters(WebhookFilters(order_statuses=["confirmed"]), {"order": {"id": "o1"}})
    assert not matches_filters(WebhookFilters(payment_types=["advance"]), {"payment": {"id": "pay_1"}})
    assert not matches_filters(WebhookFilters(product_categories=["textiles"]), {"product": {"id": "p"}})
    # order value and countries only reject on a present value
    assert matches_filters(WebhookFilters(min_order_value=100, countries=["SE"]), {"order": {"id": "o1"}})


def test_empty_lists_impose_nothing():
    filters = WebhookFilters(order_statuses=[], countries=[], product_categories=[])
    assert matches_filters(filters, _order_data(status="cancelled"))


def test_order_status_filter():
    filters = WebhookFilters(order_statuses=["confirmed", "shipped"])
    assert matches_filters(filters, _order_data(status="shipped"))
    assert not matches_filters(filters, _order_data(status="cancelled"))


def test_payment_type_filter():
    filters = WebhookFilters(payment_types=["advance"])
    assert matches_filters(filters, {"payment": {"type": "advance"}})
    assert not matches_filters(filters, {"payment": {"type": "delivery"}})


def test_countries_from_buyer_seller_and_shipping():
    data = _order_data(buyer="SE", seller="NG", ship_to="DE")
    assert payload_countries(data) == {"SE", "NG", "DE"}
    assert matches_filters(WebhookFilters(countries=["DE"]), data)
    assert not matches_filters(WebhookFilters(countries=["US"]), data)


def test_product_category_sources():
    assert product_category({"product": {"category": "textiles"}}) == "textiles"
    assert product_category(_order_data(category="minerals")) == "minerals"
    filters = WebhookFilters(product_categories=["textiles"])
    assert matches_filters(filters, {"product": {"id": "p", "category": "textiles"}})
    assert not matches_filters(filters, _order_data(category="minerals"))


def test_filters_are_a_conjunction():
    filters = WebhookFilters(min_order_value=500, order_statuses=["confirmed"], countries=["SE"])
    assert matches_filters(filters, _order_data(total=600, status="confirmed", buyer="SE"))
    assert not matches_filters(filters, _order_data(total=400, status="confirmed", buyer="SE"))
    assert not matches_filters(filters, _order_data(total=600, status="pending", buyer="SE"))
    assert not matches_filters(filters, _order_data(total=600, status="confirmed", buyer="US", seller="US"))
