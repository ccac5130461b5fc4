"""Realistic sample event data for each event type (test harness and docs)."""

from datetime import datetime, timedelta, timezone

from app.schemas.events import WebhookEventType, build_payload, create_event, delivery_id_for, format_timestamp

E = WebhookEventType


def _ts(days: float = 0) -> str:
    return format_timestamp(datetime.now(timezone.utc) + timedelta(days=days))


def _user(role: str, **extra) -> dict:
    base = {
        "exporter": {
            "id": "usr_exp_1001", "email": "exports@saharaspice.example", "firstName": "Amina",
            "lastName": "Bello", "companyName": "Sahara Spice Exports", "role": "exporter", "country": "NG",
        },
        "importer": {
            "id": "usr_imp_2002", "email": "buying@nordicfoods.example", "firstName": "Lars",
            "lastName": "Nilsson", "companyName": "Nordic Foods AB", "role": "importer", "country": "SE",
        },
        "admin": {
            "id": "usr_adm_0001", "email": "ops@vasa.example", "firstName": "Priya",
            "lastName": "Raman", "role": "admin", "country": "GB",
        },
    }[role]
    return {**base, **extra}


def _product(**extra) -> dict:
    return {
        "id": "prd_3003",
        "title": "Organic Ginger, Dried Split",
        "category": "agriculture",
        "subcategory": "spices",
        "pricing": {"basePrice": 2.85, "currency": "USD", "unit": "kg"},
        "seller": _user("exporter"),
        **extra,
    }


def _order(status: str = "confirmed", **extra) -> dict:
    return {
        "id": "ord_4004",
        "orderNumber": "VASA240115001",
        "status": status,
        "buyer": _user("importer"),
        "seller": _user("exporter"),
        "product": _product(),
        "quantity": 2000,
        "currency": "USD",
        "pricing": {"subtotal": 5700.0, "platformFee": 114.0, "shippingCost": 850.0, "total": 6664.0},
        "shipping": {"shippingAddress": {"city": "Gothenburg", "country": "SE"}},
        **extra,
    }


def _payment(type_: str, status: str, amount: float) -> dict:
    return {
        "id": f"pay_{type_}_5005", "orderId": "ord_4004", "type": type_,
        "amount": amount, "currency": "USD", "status": status, "method": "bank_transfer",
    }


def _shipment(status: str) -> dict:
    return {
        "id": "shp_6006", "orderId": "ord_4004", "carrier": "Maersk",
        "trackingNumber": "MAEU1234567", "status": status,
    }


def _document(**extra) -> dict:
    return {
        "id": "doc_7007", "name": "Phytosanitary Certificate", "type": "phytosanitary",
        "url": "https://files.vasa.example/doc_7007.pdf", "verified": False, **extra,
    }


SAMPLE_DATA_BUILDERS = {
    E.ORDER_CREATED: lambda: {"order": _order("pending")},
    E.ORDER_UPDATED: lambda: {"order": _order("confirmed"), "previous_status": "pending",
                              "changes": ["status", "quantity"]},
    E.ORDER_CANCELLED: lambda: {"order": _order("cancelled"), "cancelled_by": _user("importer"),
                                "reason": "Buyer sourced locally", "cancellation_fee": 50.0,
                                "refund_amount": 1950.0},
    E.ORDER_COMPLETED: lambda: {"order": _order("completed"), "completion_date": _ts(),
                                "total_amount_paid": 6664.0},
    E.ORDER_DISPUTED: lambda: {"order": _order("disputed"), "dispute": {
        "id": "dsp_8008", "raised_by": _user("importer"), "reason": "Moisture above contract spec",
        "status": "open"}},
    E.PAYMENT_PENDING: lambda: {"payment": _payment("advance", "pending", 1999.2), "order": _order(),
                                "due_date": _ts(7)},
    E.PAYMENT_COMPLETED: lambda: {"payment": _payment("shipment", "completed", 3332.0), "order": _order()},
    E.PAYMENT_FAILED: lambda: {"payment": _payment("advance", "failed", 1999.2), "order": _order(),
                               "failure_reason": "Insufficient funds", "retry_allowed": True},
    E.PAYMENT_REFUNDED: lambda: {"payment": _payment("advance", "refunded", 1999.2), "order": _order("cancelled"),
                                 "refund_amount": 1999.2, "refund_reason": "Order cancelled",
                                 "refund_date": _ts()},
    E.PAYMENT_ADVANCE_PAID: lambda: {"payment": _payment("advance", "completed", 1999.2), "order": _order()},
    E.PAYMENT_SHIPMENT_PAID: lambda: {"payment": _payment("shipment", "completed", 3332.0),
                                      "order": _order("shipped")},
    E.PAYMENT_DELIVERY_PAID: lambda: {"payment": _payment("delivery", "completed", 1332.8),
                                      "order": _order("delivered")},
    E.SHIPPING_READY_TO_SHIP: lambda: {"shipment": _shipment("ready"), "order": _order("confirmed")},
    E.SHIPPING_SHIPPED: lambda: {"shipment": _shipment("shipped"), "order": _order("shipped"),
                                 "shipped_date": _ts()},
    E.SHIPPING_IN_TRANSIT: lambda: {"shipment": _shipment("in_transit"), "order": _order("shipped"),
                                    "current_location": "Port of Rotterdam", "next_checkpoint": "Gothenburg"},
    E.SHIPPING_DELIVERED: lambda: {"shipment": _shipment("delivered"), "order": _order("delivered"),
                                   "delivered_date": _ts(), "received_by": "L. Nilsson"},
    E.SHIPPING_DELAYED: lambda: {"shipment": _shipment("delayed"), "order": _order("shipped"),
                                 "delay_reason": "Port congestion", "new_estimated_delivery": _ts(5),
                                 "delay_duration_hours": 72},
    E.SHIPPING_RETURNED: lambda: {"shipment": _shipment("returned"), "order": _order("disputed"),
                                  "return_reason": "Rejected at customs", "return_date": _ts()},
    E.PRODUCT_CREATED: lambda: {"product": _product()},
    E.PRODUCT_UPDATED: lambda: {"product": _product(), "changes": ["pricing.basePrice"]},
    E.PRODUCT_DELETED: lambda: {"product": _product(), "deleted_by": _user("exporter"),
                                "deletion_reason": "Seasonal product discontinued"},
    E.PRODUCT_LOW_STOCK: lambda: {"product": _product(), "current_stock": 150, "reorder_level": 500,
                                  "stock_shortage": 350},
    E.PRODUCT_OUT_OF_STOCK: lambda: {"product": _product(), "last_sold_date": _ts(-1),
                                     "pending_orders_count": 3},
    E.USER_VERIFIED: lambda: {"user": _user("exporter"), "verification_date": _ts(),
                              "verified_by": _user("admin")},
    E.USER_SUSPENDED: lambda: {"user": _user("importer"), "suspended_by": _user("admin"),
                               "suspension_reason": "Repeated payment defaults",
                               "suspension_date": _ts(), "suspension_duration": "30d"},
    E.ACCOUNT_KYC_APPROVED: lambda: {"user": _user("exporter"), "approved_by": _user("admin"),
                                     "approval_date": _ts(),
                                     "verified_documents": ["business_registration", "tax_certificate"]},
    E.ACCOUNT_KYC_REJECTED: lambda: {"user": _user("importer"), "rejected_by": _user("admin"),
                                     "rejection_date": _ts(), "rejection_reason": "Document expired",
                                     "required_documents": ["business_registration"]},
    E.DOCUMENT_UPLOADED: lambda: {"document": _document()},
    E.DOCUMENT_VERIFIED: lambda: {"document": _document(verified=True),
                                  "verification_notes": "Matches consignment"},
    E.DOCUMENT_REJECTED: lambda: {"document": _document(), "rejection_reason": "Illegible scan",
                                  "required_action": "Upload a clearer copy"},
    E.COMPLIANCE_CHECK_REQUIRED: lambda: {"order": _order(), "compliance_type": "export_license",
                                          "required_documents": ["export_license", "certificate_of_origin"],
                                          "deadline": _ts(3)},
    E.COMPLIANCE_CHECK_PASSED: lambda: {"order": _order(), "compliance_type": "export_license",
                                        "checked_by": _user("admin"), "check_date": _ts(),
                                        "notes": "All documents in order"},
    E.COMPLIANCE_CHECK_FAILED: lambda: {"order": _order(), "compliance_type": "sanctions_screening",
                                        "checked_by": _user("admin"), "check_date": _ts(),
                                        "failure_reason": "Consignee name match requires review",
                                        "required_action": "Provide consignee ownership details"},
    E.SYSTEM_MAINTENANCE: lambda: {"maintenance_type": "scheduled", "start_time": _ts(1),
                                   "end_time": _ts(1.1), "affected_services": ["payments", "webhooks"],
                                   "description": "Database upgrade"},
    E.SYSTEM_ALERT: lambda: {"alert_type": "performance", "severity": "medium",
                             "message": "Elevated webhook latency", "recommended_action": "None required"},
}


def sample_data(event_type: str | WebhookEventType) -> dict:
    """Fresh sample ``data`` for an event type. Raises ValueError for unknown types."""
    return SAMPLE_DATA_BUILDERS[WebhookEventType(event_type)]()


def generate_payload(event_type: str | WebhookEventType, webhook_id: str = "wh_test", **overrides) -> dict:
    """A full wire envelope, shaped exactly like the engine's, around fresh sample data."""
    data = {**sample_data(event_type), **overrides}
    event = create_event(event_type, data)
    return build_payload(event, webhook_id, delivery_id_for(event.id, webhook_id))
