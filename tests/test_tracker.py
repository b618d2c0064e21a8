import threading

import pytest

from orders import InvalidStatus
from stores import (
    RemoteOrderStore, LocalStore, ACCEPTED_ORDERS_KEY, DISMISSED_ORDERS_KEY, OUTBOX_KEY,
)
from tracker import OrderTracker
from conftest import make_order


@pytest.fixture
def tracker(remote, local):
    return OrderTracker(remote, local)


@pytest.fixture
def offline_tracker(offline_remote, local):
    return OrderTracker(offline_remote, local)


def remote_row(connector, order_id):
    return connector().execute(
        "SELECT order_status, delivery_status FROM ration_orders WHERE id = ?", (order_id,)
    ).fetchone()


def test_unreachable_store_shows_the_five_sample_orders(offline_tracker):
    orders = offline_tracker.list_orders("pending")
    assert [o.id for o in orders] == ["1", "2", "3", "4", "5"]
    assert all(o.order_status == "pending" for o in orders)


def test_empty_store_is_treated_like_an_unreachable_one(tracker):
    # A valid but empty result falls back to the samples as well
    assert [o.id for o in tracker.list_orders("pending")] == ["1", "2", "3", "4", "5"]


def test_pending_orders_come_from_the_store_newest_first(tracker, remote):
    remote.insert(make_order("10", created_at="2026-10-18T09:00:00+00:00"))
    remote.insert(make_order("11", created_at="2026-10-19T09:00:00+00:00"))
    assert [o.id for o in tracker.list_orders("pending")] == ["11", "10"]


def test_listing_other_statuses_is_refused(tracker):
    with pytest.raises(InvalidStatus):
        tracker.list_orders("rejected")


def test_accepting_a_sample_order_offline(offline_tracker, local):
    accepted = offline_tracker.accept_order("2")

    assert accepted.id == "2"
    assert accepted.order_status == "accepted"
    assert accepted.delivery_status == "pending"
    stored = local.get(ACCEPTED_ORDERS_KEY)
    assert [r["id"] for r in stored] == ["2"]
    assert stored[0]["delivery_status"] == "pending"
    assert "2" not in [o.id for o in offline_tracker.list_orders("pending")]

    delivery = offline_tracker.list_orders("accepted")
    assert [(o.id, o.order_status, o.delivery_status) for o in delivery] == [("2", "accepted", "pending")]


def test_accepting_twice_keeps_one_local_copy(offline_tracker, local):
    offline_tracker.accept_order("2")
    assert offline_tracker.accept_order("2") is None
    assert len(local.get(ACCEPTED_ORDERS_KEY)) == 1


def test_accept_updates_the_store_row(tracker, remote, connector):
    remote.insert(make_order("20"))
    tracker.accept_order("20")

    assert tuple(remote_row(connector, "20")) == ("accepted", "pending")
    assert tracker.sync_status().queued == 0
    # Once the write has landed, the store's copy is the one shown
    assert [o.id for o in tracker.list_orders("accepted")] == ["20"]


def test_accepting_a_sample_against_a_live_store_is_not_an_error(tracker):
    tracker.accept_order("3")
    status = tracker.sync_status()
    assert status.queued == 0
    assert status.last_error is None
    assert status.last_success is not None


def test_reject_hides_the_order_without_accepting_it(tracker, remote, connector, local):
    remote.insert(make_order("30"))
    remote.insert(make_order("31"))
    tracker.reject_order("30")

    assert [o.id for o in tracker.list_orders("pending")] == ["31"]
    assert local.get(ACCEPTED_ORDERS_KEY, []) == []
    assert tuple(remote_row(connector, "30")) == ("rejected", None)
    assert tracker.list_orders("accepted") == []


def test_reject_offline_still_removes_from_pending(offline_tracker, local):
    offline_tracker.reject_order("4")
    assert "4" not in [o.id for o in offline_tracker.list_orders("pending")]
    assert local.get(ACCEPTED_ORDERS_KEY, []) == []


def test_delivery_status_toggles_both_ways(offline_tracker):
    offline_tracker.accept_order("1")

    delivered = offline_tracker.update_delivery_status("1", "delivered")
    assert [o.delivery_status for o in delivered] == ["delivered"]

    reverted = offline_tracker.update_delivery_status("1", "pending")
    assert [o.delivery_status for o in reverted] == ["pending"]


def test_delivery_status_reaches_the_store(tracker, remote, connector):
    remote.insert(make_order("40", order_status="accepted", delivery_status="pending"))
    listed = tracker.update_delivery_status("40", "delivered")
    assert tuple(remote_row(connector, "40")) == ("accepted", "delivered")
    assert [o.delivery_status for o in listed] == ["delivered"]


def test_delivery_status_for_unknown_order_is_a_local_no_op(offline_tracker, local):
    assert offline_tracker.update_delivery_status("99", "delivered") == []
    assert local.get(ACCEPTED_ORDERS_KEY) == []


def test_invalid_delivery_status_is_refused(tracker):
    with pytest.raises(InvalidStatus):
        tracker.update_delivery_status("1", "lost")


def test_accepted_view_falls_back_to_local_copies(offline_tracker):
    offline_tracker.accept_order("5")
    assert [o.id for o in offline_tracker.list_orders("accepted")] == ["5"]


def test_accepted_view_puts_local_orders_first(connector, local):
    remote = RemoteOrderStore(connector)
    remote.init_schema()
    remote.insert(make_order("50", order_status="accepted", delivery_status="pending"))
    tracker = OrderTracker(remote, local)

    tracker.accept_order("1")
    assert [o.id for o in tracker.list_orders("accepted")] == ["1", "50"]


def test_failed_writes_stay_queued_until_the_store_returns(connector, local):
    remote = RemoteOrderStore(connector)
    remote.init_schema()
    remote.insert(make_order("60"))
    tracker = OrderTracker(remote, local)

    connector.online = False
    tracker.reject_order("60")
    status = tracker.sync_status()
    assert status.queued == 1
    assert "unable to open database file" in status.last_error

    connector.online = True
    status = tracker.drain_outbox()
    assert status.queued == 0
    assert status.last_error is None
    assert tuple(remote_row(connector, "60")) == ("rejected", None)


def test_queued_writes_for_one_order_are_merged(connector, local):
    remote = RemoteOrderStore(connector)
    remote.init_schema()
    remote.insert(make_order("70"))
    tracker = OrderTracker(remote, local)

    connector.online = False
    tracker.accept_order("1")
    tracker.update_delivery_status("1", "delivered")
    queue = local.get(OUTBOX_KEY)
    assert len(queue) == 1
    assert queue[0]["fields"] == {"order_status": "accepted", "delivery_status": "delivered"}

    connector.online = True
    # Order 1 only exists locally, so the store answers "No rows found" and the write is dropped
    assert tracker.drain_outbox().queued == 0


def test_drain_with_nothing_queued_is_quiet(tracker):
    status = tracker.drain_outbox()
    assert status.queued == 0
    assert status.last_attempt is None


def test_one_bad_row_does_not_hide_the_real_orders(tracker, remote, connector):
    remote.insert(make_order("10", created_at="2026-10-18T09:00:00+00:00"))
    remote.insert(make_order("11", created_at="2026-10-19T09:00:00+00:00"))
    db = connector()
    db.execute("UPDATE ration_orders SET delivery_status = 'Delivered' WHERE id = '11'")
    db.commit()

    assert [o.id for o in tracker.list_orders("pending")] == ["10"]


def test_delivery_changed_on_another_device_shows_here(remote, tmp_path):
    directory = str(tmp_path / "shared_store")
    device_a = OrderTracker(remote, LocalStore(directory, "device-a"))
    device_b = OrderTracker(remote, LocalStore(directory, "device-b"))
    remote.insert(make_order("20"))

    device_a.accept_order("20")
    device_b.update_delivery_status("20", "delivered")

    listed = device_a.list_orders("accepted")
    assert [(o.id, o.delivery_status) for o in listed] == [("20", "delivered")]
    # The cached copy follows the store as well
    assert device_a.local.get(ACCEPTED_ORDERS_KEY)[0]["delivery_status"] == "delivered"


def test_unsent_local_change_still_wins(connector, local):
    remote = RemoteOrderStore(connector)
    remote.init_schema()
    remote.insert(make_order("21", order_status="accepted", delivery_status="pending"))
    tracker = OrderTracker(remote, local)
    local.set(ACCEPTED_ORDERS_KEY, [make_order("21", order_status="accepted", delivery_status="pending").to_record()])

    connector.online = False
    tracker.update_delivery_status("21", "delivered")
    connector.online = True

    assert tracker.sync_status().queued == 1
    assert [o.delivery_status for o in tracker.list_orders("accepted")] == ["delivered"]
    assert tuple(remote_row(connector, "21")) == ("accepted", "pending")


def test_concurrent_accepts_keep_every_order(offline_remote, local):
    ids = ["1", "2", "3", "4", "5"]
    barrier = threading.Barrier(len(ids))
    errors = []

    def accept(order_id):
        barrier.wait()
        try:
            OrderTracker(offline_remote, local).accept_order(order_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=accept, args=(order_id,)) for order_id in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(r["id"] for r in local.get(ACCEPTED_ORDERS_KEY)) == ids
    assert sorted(local.get(DISMISSED_ORDERS_KEY)) == ids
    assert sorted(m["id"] for m in local.get(OUTBOX_KEY)) == ids


def test_dismissed_ids_are_dropped_once_the_store_has_the_decision(tracker, remote, local):
    remote.insert(make_order("30"))
    remote.insert(make_order("31"))
    tracker.reject_order("30")

    assert local.get(DISMISSED_ORDERS_KEY) == []
    assert [o.id for o in tracker.list_orders("pending")] == ["31"]


def test_dismissed_ids_stay_while_the_write_is_queued(connector, local):
    remote = RemoteOrderStore(connector)
    remote.init_schema()
    remote.insert(make_order("32"))
    tracker = OrderTracker(remote, local)

    connector.online = False
    tracker.reject_order("32")
    assert local.get(DISMISSED_ORDERS_KEY) == ["32"]

    connector.online = True
    tracker.drain_outbox()
    assert local.get(DISMISSED_ORDERS_KEY) == []


def test_rejected_sample_stays_hidden(tracker, local):
    # Samples are not in the store, so only this device's list keeps them out of view
    tracker.reject_order("2")
    assert local.get(DISMISSED_ORDERS_KEY) == ["2"]
    assert "2" not in [o.id for o in tracker.list_orders("pending")]
