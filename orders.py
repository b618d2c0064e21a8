import datetime
import json
from dataclasses import dataclass, asdict
from typing import List, Optional, Union

ORDER_PENDING = "pending"
ORDER_ACCEPTED = "accepted"
ORDER_REJECTED = "rejected"
ORDER_STATUSES = (ORDER_PENDING, ORDER_ACCEPTED, ORDER_REJECTED)

DELIVERY_PENDING = "pending"
DELIVERED = "delivered"
DELIVERY_STATUSES = (DELIVERY_PENDING, DELIVERED)


class InvalidStatus(ValueError):
    pass


# ============================================================
# ITEMS: RAW TEXT OR STRUCTURED LINES
# ============================================================

@dataclass(frozen=True)
class ItemLine:
    name: str
    quantity: str


@dataclass(frozen=True)
class RawItems:
    text: str

    def display(self):
        return self.text

    def to_value(self):
        return self.text


@dataclass(frozen=True)
class StructuredItems:
    lines: tuple = ()

    def display(self):
        return ", ".join(f"{line.name} ({line.quantity})" for line in self.lines)

    def to_value(self):
        return [{"name": line.name, "quantity": line.quantity} for line in self.lines]


Items = Union[RawItems, StructuredItems]


def _stringify(value):
    return json.dumps(value, ensure_ascii=False, default=str)


def parse_items(value) -> Items:
    """Builds the items variant from whatever shape a store handed back."""
    if isinstance(value, (RawItems, StructuredItems)):
        return value
    if isinstance(value, str):
        return RawItems(value)
    if isinstance(value, (list, tuple)) and all(isinstance(entry, dict) for entry in value):
        return StructuredItems(tuple(
            ItemLine(
                name="?" if entry.get("name") in (None, "") else str(entry.get("name")),
                quantity="?" if entry.get("quantity") in (None, "") else str(entry.get("quantity")),
            )
            for entry in value
        ))
    # Unknown shapes are kept as their serialized form so display never fails
    return RawItems(_stringify(value))


def format_items(items) -> str:
    return parse_items(items).display()


# ============================================================
# ORDER MODEL
# ============================================================

@dataclass
class Order:
    """A ration order as shown on the submissions and delivery pages.

    ``pay_history`` is read as "this order has been paid", which is how the
    dashboard labels it (Paid / Not Paid). The stored name also suggests the
    household's past payment record; nothing here relies on that reading.
    """

    id: str
    user_id: str
    phone_no: str
    items: Items
    cost: float
    pay_history: bool
    visit_time: str
    order_status: str = ORDER_PENDING
    delivery_status: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        self.id = str(self.id)
        self.items = parse_items(self.items)
        self.pay_history = bool(self.pay_history)
        if self.order_status not in ORDER_STATUSES:
            raise InvalidStatus(f"Unknown order status: {self.order_status}")
        if self.delivery_status is not None and self.delivery_status not in DELIVERY_STATUSES:
            raise InvalidStatus(f"Unknown delivery status: {self.delivery_status}")

    @classmethod
    def from_record(cls, record):
        known = {name: record.get(name) for name in cls.__dataclass_fields__ if name in record}
        return cls(**known)

    def to_record(self):
        record = asdict(self)
        record["items"] = self.items.to_value()
        return record

    def with_changes(self, **changes):
        record = self.to_record()
        record.update(changes)
        return Order.from_record(record)

    @property
    def items_display(self):
        return self.items.display()


def validate_delivery_status(status):
    if status not in DELIVERY_STATUSES:
        raise InvalidStatus(f"Delivery status must be one of {', '.join(DELIVERY_STATUSES)}, got {status!r}")
    return status


# ============================================================
# BUILT-IN SAMPLE SUBMISSIONS
# ============================================================

SAMPLE_ORDER_ROWS = [
    ("1", "USR001", "9876543210", [("Rice", "5 kg"), ("Wheat", "3 kg"), ("Sugar", "2 kg")], 450, True),
    ("2", "USR002", "9123456789", [("Rice", "10 kg"), ("Dal", "2 kg"), ("Oil", "1 L")], 650, False),
    ("3", "USR003", "9988776655", [("Wheat", "8 kg"), ("Sugar", "3 kg"), ("Salt", "1 kg")], 380, True),
    ("4", "USR004", "9445566778", [("Rice", "7 kg"), ("Dal", "3 kg"), ("Tea", "500 g")], 520, True),
    ("5", "USR005", "9334455667", [("Wheat", "6 kg"), ("Sugar", "4 kg"), ("Oil", "2 L")], 720, False),
]


def sample_orders(now=None) -> List[Order]:
    """Returns the fixed pending set, visit times one hour apart going back from now."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    orders = []
    for offset, (order_id, user_id, phone_no, lines, cost, paid) in enumerate(SAMPLE_ORDER_ROWS):
        stamp = (now - datetime.timedelta(hours=offset)).isoformat()
        orders.append(Order(
            id=order_id,
            user_id=user_id,
            phone_no=phone_no,
            items=[{"name": name, "quantity": qty} for name, qty in lines],
            cost=cost,
            pay_history=paid,
            visit_time=stamp,
            order_status=ORDER_PENDING,
            created_at=stamp,
        ))
    return orders


def format_visit_time(iso_dt_str):
    if not iso_dt_str:
        return "N/A"
    try:
        dt = datetime.datetime.fromisoformat(str(iso_dt_str).replace("Z", "+00:00"))
    except ValueError:
        return str(iso_dt_str)
    return dt.strftime('%d %b %Y, %I:%M %p')
