import datetime
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from orders import (
    Order, InvalidStatus, sample_orders, validate_delivery_status,
    ORDER_PENDING, ORDER_ACCEPTED, ORDER_REJECTED, DELIVERY_PENDING,
)
from stores import (
    RemoteStoreError, RowNotFound,
    ACCEPTED_ORDERS_KEY, DISMISSED_ORDERS_KEY, OUTBOX_KEY, SYNC_STATUS_KEY,
)

log = logging.getLogger(__name__)


def _now():
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass
class SyncStatus:
    queued: int = 0
    last_attempt: Optional[str] = None
    last_success: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def in_sync(self):
        return self.queued == 0


class OrderTracker:
    """Order lifecycle over the shared remote table and this device's local store.

    Every status change lands in the local store first, then goes through the
    outbox (``pendingMutations``) to the remote table. Remote failures never
    reach the caller; they stay queued and show up in ``sync_status()``.
    """

    def __init__(self, remote, local, samples=sample_orders):
        self.remote = remote
        self.local = local
        self.samples = samples

    # -------------------- listing --------------------

    def list_orders(self, status) -> List[Order]:
        if status == ORDER_PENDING:
            return self._list_pending()
        if status == ORDER_ACCEPTED:
            return self._list_accepted()
        raise InvalidStatus(f"Orders can only be listed as {ORDER_PENDING} or {ORDER_ACCEPTED}, got {status!r}")

    def _list_pending(self):
        try:
            orders = self.remote.list_by_status(ORDER_PENDING)
        except RemoteStoreError as e:
            log.warning("Pending orders unavailable, showing sample submissions: %s", e)
            orders = []
        # An empty table is treated like an unreachable one
        if not orders:
            orders = self.samples()
        dismissed = set(self.local.get(DISMISSED_ORDERS_KEY, []))
        return [order for order in orders if order.id not in dismissed]

    def _list_accepted(self):
        local_orders = self.local_accepted_orders()
        try:
            remote_orders = self.remote.list_by_status(ORDER_ACCEPTED)
        except RemoteStoreError as e:
            log.warning("Accepted orders unavailable, showing this device's copy: %s", e)
            return local_orders
        # The remote copy wins unless this device still has an unsent change for it
        queued_ids = {m["id"] for m in self.local.get(OUTBOX_KEY, []) or []}
        remote_by_id = {order.id: order for order in remote_orders}
        shown_locally = [
            order for order in local_orders
            if order.id not in remote_by_id or order.id in queued_ids
        ]
        self._refresh_local_copies(remote_by_id, queued_ids)
        local_ids = {order.id for order in shown_locally}
        return shown_locally + [order for order in remote_orders if order.id not in local_ids]

    def _refresh_local_copies(self, remote_by_id, queued_ids):
        def refresh(current):
            refreshed = []
            for record in current or []:
                order_id = str(record.get("id"))
                if order_id in remote_by_id and order_id not in queued_ids:
                    record = remote_by_id[order_id].to_record()
                refreshed.append(record)
            return refreshed

        self.local.update(ACCEPTED_ORDERS_KEY, refresh, [])

    def local_accepted_orders(self):
        orders = []
        for record in self.local.get(ACCEPTED_ORDERS_KEY, []):
            try:
                orders.append(Order.from_record(record))
            except (TypeError, ValueError) as e:
                log.warning("Skipping unreadable local order %r: %s", record, e)
        return orders

    # -------------------- transitions --------------------

    def accept_order(self, order_id) -> Optional[Order]:
        order_id = str(order_id)
        order = next((o for o in self.list_orders(ORDER_PENDING) if o.id == order_id), None)
        accepted = None
        if order is not None:
            accepted = order.with_changes(order_status=ORDER_ACCEPTED, delivery_status=DELIVERY_PENDING)
            record = accepted.to_record()

            def upsert(current):
                kept = [r for r in current or [] if str(r.get("id")) != order_id]
                return kept + [record]

            self.local.update(ACCEPTED_ORDERS_KEY, upsert, [])
            self._dismiss(order_id)
        else:
            log.info("Order %s is not in the pending view; sending the remote update only", order_id)
        self._push(order_id, {"order_status": ORDER_ACCEPTED, "delivery_status": DELIVERY_PENDING})
        return accepted

    def reject_order(self, order_id):
        order_id = str(order_id)
        self._dismiss(order_id)
        self._push(order_id, {"order_status": ORDER_REJECTED})

    def update_delivery_status(self, order_id, new_status) -> List[Order]:
        order_id = str(order_id)
        validate_delivery_status(new_status)

        def rewrite(current):
            return [
                dict(r, delivery_status=new_status) if str(r.get("id")) == order_id else r
                for r in current or []
            ]

        self.local.update(ACCEPTED_ORDERS_KEY, rewrite, [])
        self._push(order_id, {"delivery_status": new_status})
        return self.list_orders(ORDER_ACCEPTED)

    def _dismiss(self, order_id):
        def add(current):
            current = list(current or [])
            if order_id not in current:
                current.append(order_id)
            return current

        self.local.update(DISMISSED_ORDERS_KEY, add, [])

    # -------------------- outbox --------------------

    def _push(self, order_id, fields):
        def enqueue(current):
            queue = list(current or [])
            for i, mutation in enumerate(queue):
                if mutation["id"] == order_id:
                    merged = dict(mutation["fields"], **fields)
                    queue[i] = dict(mutation, fields=merged, seq=uuid.uuid4().hex)
                    return queue
            queue.append({"seq": uuid.uuid4().hex, "id": order_id, "fields": fields, "queued_at": _now()})
            return queue

        self.local.update(OUTBOX_KEY, enqueue, [])
        self.drain_outbox()

    def drain_outbox(self) -> SyncStatus:
        queue = self.local.get(OUTBOX_KEY, [])
        if not queue:
            return self.sync_status()

        done = set()
        decided = set()
        last_error = None
        for mutation in queue:
            try:
                self.remote.update(mutation["id"], mutation["fields"])
            except RowNotFound:
                log.debug("Order %s only exists on this device, dropping remote update", mutation["id"])
            except RemoteStoreError as e:
                log.error("Remote update for order %s failed: %s", mutation["id"], e)
                last_error = str(e)
                continue
            else:
                if mutation["fields"].get("order_status") in (ORDER_ACCEPTED, ORDER_REJECTED):
                    decided.add(mutation["id"])
            done.add(mutation["seq"])

        remaining = self.local.update(
            OUTBOX_KEY, lambda current: [m for m in current or [] if m["seq"] not in done], [],
        )
        if decided:
            # The store no longer lists these as pending, so they need no hiding here
            self.local.update(
                DISMISSED_ORDERS_KEY, lambda current: [i for i in current or [] if i not in decided], [],
            )
        attempt = _now()

        def record(status):
            status = dict(status or {})
            status["last_attempt"] = attempt
            if last_error is None:
                status["last_success"] = attempt
                status["last_error"] = None
            else:
                status["last_error"] = last_error
            return status

        self.local.update(SYNC_STATUS_KEY, record, {})
        if remaining:
            log.info("%d order update(s) still waiting for the remote store", len(remaining))
        return self.sync_status()

    def sync_status(self) -> SyncStatus:
        status = self.local.get(SYNC_STATUS_KEY, {}) or {}
        return SyncStatus(
            queued=len(self.local.get(OUTBOX_KEY, []) or []),
            last_attempt=status.get("last_attempt"),
            last_success=status.get("last_success"),
            last_error=status.get("last_error"),
        )
