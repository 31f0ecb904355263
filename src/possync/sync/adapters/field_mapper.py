"""Field mapping adapter for Toast orders.

Transforms Toast ordersBulk records into canonical Transaction entities and
Transaction entities into database record tuples. This is the single place
where provider timestamps are normalized to UTC and the hour-of-day /
day-of-week analytics are derived.
"""

import json
import re
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ...api.exceptions import PartialRecordError
from ..domain.entities import Transaction
from ..domain.ports import ITransactionMapper

PAYMENT_METHODS = {
    "CASH": "cash",
    "CREDIT": "credit",
    "DEBIT": "debit",
    "GIFTCARD": "gift_card",
    "REWARDCARD": "loyalty",
}

ORDER_TYPES = {
    "DINE_IN": "dine_in",
    "TAKE_OUT": "takeout",
    "DELIVERY": "delivery",
    "DRIVE_THRU": "drive_thru",
    "CURBSIDE": "curbside",
}

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

# Toast sends offsets as +0000; fromisoformat wants +00:00
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


class ToastTransactionMapper(ITransactionMapper):
    """Maps Toast order JSON to Transaction entities and DB records.

    This class handles:
    - Required field checks (guid, openedDate, checks[0].totalAmount)
    - Timestamp parsing to timezone-aware UTC
    - Decimal conversion of all monetary values
    - Payment method, order type and status normalization
    - UTC analytics buckets (hour_of_day, day_of_week)
    """

    def external_id(self, raw: dict[str, Any]) -> str | None:
        guid = raw.get("guid") if isinstance(raw, dict) else None
        return str(guid) if guid else None

    def map_to_entity(self, restaurant_id: str, raw: dict[str, Any]) -> Transaction:
        """Transform one Toast order into a Transaction.

        Raises:
            PartialRecordError: If guid, openedDate, or the check total is
                missing or unparseable
        """
        external_id = self.external_id(raw)
        if not external_id:
            raise PartialRecordError("Order has no guid", field="guid")

        opened_at = self._required_timestamp(raw, "openedDate", external_id)

        checks = self._entries(raw, "checks", external_id)
        if not checks:
            raise PartialRecordError("Order has no checks", field="checks", external_id=external_id)
        check = checks[0]

        total = self._money(check.get("totalAmount"), "checks[0].totalAmount", external_id, required=True)
        tax = self._money(check.get("taxAmount"), "checks[0].taxAmount", external_id)

        payments = [self._map_payment(p, external_id) for p in self._entries(check, "payments", external_id)]
        tip = sum((p["tip_amount"] for p in payments), _ZERO)
        paid_amount = sum((p["amount"] for p in payments), _ZERO)
        discount = sum(
            (
                self._money(d.get("discountAmount"), "appliedDiscounts.discountAmount", external_id)
                for d in self._entries(check, "appliedDiscounts", external_id)
            ),
            _ZERO,
        )
        selections = self._entries(check, "selections", external_id)

        return Transaction(
            restaurant_id=restaurant_id,
            external_id=external_id,
            opened_at=opened_at,
            total_amount=total,
            subtotal=total - tax,
            tax_amount=tax,
            tip_amount=tip,
            discount_amount=discount,
            tip_percentage=self.tip_percentage(tip, paid_amount),
            order_type=self._order_type(self._object(raw, "diningOption", external_id)),
            status=self._status(raw, check),
            payment_method=payments[0]["method"] if payments else None,
            employee_id=self._object(raw, "server", external_id).get("guid"),
            closed_at=self._optional_timestamp(raw, "closedDate", external_id),
            paid_at=self._optional_timestamp(raw, "paidDate", external_id),
            hour_of_day=opened_at.hour,
            day_of_week=opened_at.weekday(),
            items=[self._map_item(s, external_id) for s in selections],
            payments=[self._payment_json(p) for p in payments],
            raw_data=raw,
        )

    def map_to_record(self, txn: Transaction) -> tuple[Any, ...]:
        """Transform a Transaction to the tuple PostgresTransactionRepository inserts.

        Ordering: (restaurant_id, external_id, opened_at, closed_at, paid_at,
        order_type, status, payment_method, employee_id, subtotal, tax_amount,
        tip_amount, discount_amount, total_amount, tip_percentage,
        hour_of_day, day_of_week, items, payments, raw_data)
        """
        return (
            txn.restaurant_id,
            txn.external_id,
            txn.opened_at,
            txn.closed_at,
            txn.paid_at,
            txn.order_type,
            txn.status,
            txn.payment_method,
            txn.employee_id,
            txn.subtotal,
            txn.tax_amount,
            txn.tip_amount,
            txn.discount_amount,
            txn.total_amount,
            txn.tip_percentage,
            txn.hour_of_day,
            txn.day_of_week,
            json.dumps(txn.items),  # JSONB requires JSON string
            json.dumps(txn.payments),
            json.dumps(txn.raw_data),
        )

    # ----------------------------------------
    # Normalization helpers
    # ----------------------------------------

    @staticmethod
    def tip_percentage(tip: Decimal, amount: Decimal) -> Decimal:
        """Tip as a percentage of the pre-tip amount, capped at 100."""
        pre_tip = amount - tip
        if pre_tip <= 0:
            return _ZERO
        pct = (tip / pre_tip * _HUNDRED).quantize(Decimal("0.01"))
        return min(pct, _HUNDRED)

    def _map_payment(self, payment: dict[str, Any], external_id: str) -> dict[str, Any]:
        return {
            "method": PAYMENT_METHODS.get(str(payment.get("type") or "").upper(), "other"),
            "amount": self._money(payment.get("amount"), "payments.amount", external_id),
            "tip_amount": self._money(payment.get("tipAmount"), "payments.tipAmount", external_id),
            "card_type": payment.get("cardType"),
            "last4": payment.get("last4Digits"),
        }

    @staticmethod
    def _payment_json(payment: dict[str, Any]) -> dict[str, Any]:
        return {
            **payment,
            "amount": str(payment["amount"]),
            "tip_amount": str(payment["tip_amount"]),
        }

    def _map_item(self, selection: dict[str, Any], external_id: str) -> dict[str, Any]:
        modifiers = self._entries(selection, "modifiers", external_id, field="selections.modifiers")
        return {
            "item_id": self._object(selection, "item", external_id, field="selections.item").get("guid")
            or selection.get("guid"),
            "name": selection.get("displayName") or "",
            "quantity": selection.get("quantity") or 1,
            "price": str(selection.get("price") or 0),
            "modifiers": [m.get("displayName") for m in modifiers if m.get("displayName")],
        }

    @staticmethod
    def _order_type(dining_option: dict[str, Any]) -> str:
        behavior = str(dining_option.get("behavior") or "").upper()
        return ORDER_TYPES.get(behavior, "dine_in")

    @staticmethod
    def _object(container: dict[str, Any], key: str, external_id: str, field: str | None = None) -> dict[str, Any]:
        """Optional nested object; absent is {}, anything but a dict is a partial record."""
        value = container.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            name = field or key
            raise PartialRecordError(f"Invalid {name}: expected an object", field=name, external_id=external_id)
        return value

    @staticmethod
    def _entries(
        container: dict[str, Any], key: str, external_id: str, field: str | None = None
    ) -> list[dict[str, Any]]:
        """Optional list of objects; absent is [], null or non-object entries are a partial record."""
        name = field or key
        value = container.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise PartialRecordError(f"Invalid {name}: expected a list", field=name, external_id=external_id)
        for index, entry in enumerate(value):
            if not isinstance(entry, dict):
                raise PartialRecordError(
                    f"Invalid {name}[{index}]: expected an object, got {type(entry).__name__}",
                    field=name,
                    external_id=external_id,
                )
        return value

    @staticmethod
    def _status(raw: dict[str, Any], check: dict[str, Any]) -> str:
        if raw.get("voided") or check.get("voided"):
            return "voided"
        if str(check.get("paymentStatus") or "").upper() in ("PAID", "CLOSED"):
            return "completed"
        return "pending"

    @staticmethod
    def _money(value: Any, field: str, external_id: str, required: bool = False) -> Decimal:
        if value is None or value == "":
            if required:
                raise PartialRecordError(f"Missing {field}", field=field, external_id=external_id)
            return _ZERO
        if isinstance(value, bool):
            raise PartialRecordError(f"Invalid {field}: {value!r}", field=field, external_id=external_id)
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise PartialRecordError(f"Invalid {field}: {value!r}", field=field, external_id=external_id)
        if not amount.is_finite():
            raise PartialRecordError(f"Invalid {field}: {value!r}", field=field, external_id=external_id)
        return amount

    def _optional_timestamp(self, raw: dict[str, Any], field: str, external_id: str) -> datetime | None:
        try:
            return self._parse_timestamp(raw.get(field))
        except ValueError:
            raise PartialRecordError(f"Invalid {field}: {raw.get(field)!r}", field=field, external_id=external_id)

    def _required_timestamp(self, raw: dict[str, Any], field: str, external_id: str) -> datetime:
        parsed = self._optional_timestamp(raw, field, external_id)
        if parsed is None:
            raise PartialRecordError(f"Missing {field}", field=field, external_id=external_id)
        return parsed

    @staticmethod
    def _parse_timestamp(iso_string: str | None) -> datetime | None:
        """Parse an ISO 8601 timestamp to an aware UTC datetime.

        Accepts 'Z', '+00:00' and Toast's compact '+0000' offsets.
        Naive timestamps are taken as UTC.

        Raises:
            ValueError: If the string is not ISO 8601
        """
        if not iso_string:
            return None
        text = str(iso_string).strip().replace("Z", "+00:00")
        text = _COMPACT_OFFSET_RE.sub(r"\1:\2", text)
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
