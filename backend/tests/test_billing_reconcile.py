from uuid import uuid4

import pytest

from courseshop.core.errors import DataIntegrityError, ProviderError, ReferentialError
from courseshop.services.billing import (
    handle_event,
    process_webhook,
    record_checkout_purchase,
    upsert_subscription_from_event,
)
from courseshop.services.billing_provider import decode_event
from tests.testkit import (
    WEBHOOK_SECRET,
    FakeProvider,
    checkout_event,
    encode_event,
    sign,
    subscription_event,
)


def _session(**kwargs):
    return decode_event(checkout_event(**kwargs)).session


def _subscription(**kwargs):
    return decode_event(subscription_event(**kwargs)).subscription


def test_one_time_checkout_records_purchase(store, provider):
    user_id, course_id = uuid4(), uuid4()
    store.add_user("cus_1", user_id)
    store.add_course(course_id)

    result = record_checkout_purchase(_session(metadata={"courseId": str(course_id)}), store=store)

    assert result.written is True
    record = store.purchases["cs_test_1"]
    assert record.user_id == user_id
    assert record.course_id == course_id
    assert record.amount == 4900


def test_missing_amount_is_recorded_as_zero(store):
    store.add_user("cus_1", uuid4())
    course_id = store.add_course(uuid4())
    record_checkout_purchase(_session(amount_total=None, metadata={"courseId": str(course_id)}), store=store)
    assert store.purchases["cs_test_1"].amount == 0


def test_subscription_mode_checkout_never_records_purchase(store):
    store.add_user("cus_1", uuid4())
    result = record_checkout_purchase(
        _session(mode="subscription", metadata={"courseId": str(uuid4())}),
        store=store,
    )
    assert result is None
    assert store.writes == []


def test_checkout_without_course_id_never_records_purchase(store):
    store.add_user("cus_1", uuid4())
    assert record_checkout_purchase(_session(metadata={"userId": "u"}), store=store) is None
    assert record_checkout_purchase(_session(metadata=None), store=store) is None
    assert store.writes == []


def test_checkout_with_invalid_course_id_is_data_integrity_error(store):
    store.add_user("cus_1", uuid4())
    with pytest.raises(DataIntegrityError) as exc_info:
        record_checkout_purchase(_session(metadata={"courseId": "not-a-uuid"}), store=store)
    assert exc_info.value.context["field"] == "metadata.courseId"
    assert store.writes == []


@pytest.mark.parametrize("customer", [None, "cus_unknown"])
def test_checkout_for_unknown_customer_is_referential_error(store, customer):
    with pytest.raises(ReferentialError):
        record_checkout_purchase(_session(customer=customer, metadata={"courseId": str(uuid4())}), store=store)
    assert store.writes == []


def test_checkout_for_unknown_course_is_referential_error(store):
    store.add_user("cus_1", uuid4())
    missing = uuid4()

    with pytest.raises(ReferentialError) as exc_info:
        record_checkout_purchase(_session(metadata={"courseId": str(missing)}), store=store)

    assert exc_info.value.context["field"] == "metadata.courseId"
    assert exc_info.value.context["course_id"] == str(missing)
    assert store.writes == []


def test_redelivered_checkout_is_written_once(store):
    store.add_user("cus_1", uuid4())
    session = _session(metadata={"courseId": str(store.add_course(uuid4()))})

    first = record_checkout_purchase(session, store=store)
    second = record_checkout_purchase(session, store=store)

    assert first.written is True
    assert second.written is False
    assert len(store.purchases) == 1


def test_active_subscription_is_upserted_in_milliseconds(store, provider):
    user_id = uuid4()
    store.add_user("cus_1", user_id)

    upsert_subscription_from_event(_subscription(), store=store, provider=provider)

    record = store.subscriptions["sub_1"]
    assert record.user_id == user_id
    assert record.current_period_start == 1700000000000
    assert record.current_period_end == 1702592000000
    assert record.plan_type == "month"
    assert record.status == "active"
    assert record.cancel_at_period_end is False
    assert provider.retrieve_calls == []


@pytest.mark.parametrize("status", ["incomplete", "past_due", "canceled", "trialing"])
def test_inactive_subscription_is_never_written(store, provider, status):
    store.add_user("cus_1", uuid4())
    assert upsert_subscription_from_event(_subscription(status=status), store=store, provider=provider) is None
    assert store.writes == []


def test_subscription_without_invoice_is_skipped(store, provider):
    store.add_user("cus_1", uuid4())
    assert upsert_subscription_from_event(_subscription(latest_invoice=None), store=store, provider=provider) is None
    assert store.writes == []


def test_missing_period_uses_one_compensating_read(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider({"id": "sub_1", "current_period_start": 1710000000, "current_period_end": 1712592000})

    upsert_subscription_from_event(_subscription(start=None, end=None), store=store, provider=provider)

    assert provider.retrieve_calls == [("sub_1", ["latest_invoice", "schedule"])]
    record = store.subscriptions["sub_1"]
    assert record.current_period_start == 1710000000000
    assert record.current_period_end == 1712592000000


def test_compensating_read_falls_back_to_first_item_period(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider(
        {
            "id": "sub_1",
            "items": {
                "object": "list",
                "data": [{"id": "si_1", "current_period_start": 1700000000, "current_period_end": 1731536000}],
            },
        }
    )

    upsert_subscription_from_event(_subscription(end=None, interval="year"), store=store, provider=provider)

    record = store.subscriptions["sub_1"]
    assert record.current_period_start == 1700000000000
    assert record.current_period_end == 1731536000000
    assert record.plan_type == "year"


def test_period_missing_after_compensating_read_writes_nothing(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider({"id": "sub_1", "current_period_start": 1710000000})

    with pytest.raises(DataIntegrityError) as exc_info:
        upsert_subscription_from_event(_subscription(start=None), store=store, provider=provider)

    assert len(provider.retrieve_calls) == 1
    assert exc_info.value.context["subscription_id"] == "sub_1"
    assert store.writes == []


def test_compensating_read_failure_propagates(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider(error=ProviderError("boom", subscription_id="sub_1"))

    with pytest.raises(ProviderError):
        upsert_subscription_from_event(_subscription(start=None, end=None), store=store, provider=provider)
    assert store.writes == []


@pytest.mark.parametrize("interval", [None, "week", "day"])
def test_invalid_plan_type_is_data_integrity_error(store, provider, interval):
    store.add_user("cus_1", uuid4())
    with pytest.raises(DataIntegrityError):
        upsert_subscription_from_event(_subscription(interval=interval), store=store, provider=provider)
    assert store.writes == []


def test_subscription_for_unknown_customer_is_referential_error(store, provider):
    with pytest.raises(ReferentialError):
        upsert_subscription_from_event(_subscription(customer="cus_missing"), store=store, provider=provider)
    assert store.writes == []


def test_later_subscription_event_overwrites_earlier(store, provider):
    store.add_user("cus_1", uuid4())
    upsert_subscription_from_event(_subscription(), store=store, provider=provider)
    upsert_subscription_from_event(
        _subscription(start=1702592000, end=1705270400, cancel_at_period_end=True),
        store=store,
        provider=provider,
    )

    assert len(store.subscriptions) == 1
    record = store.subscriptions["sub_1"]
    assert record.current_period_end == 1705270400000
    assert record.cancel_at_period_end is True


def test_handle_event_outcomes(store, provider):
    store.add_user("cus_1", uuid4())
    assert handle_event(decode_event(subscription_event()), store=store, provider=provider) == "processed"
    assert handle_event(decode_event(subscription_event(status="past_due")), store=store, provider=provider) == "ignored"
    unknown = decode_event({"id": "evt_x", "type": "invoice.paid", "data": {"object": {}}})
    assert handle_event(unknown, store=store, provider=provider) == "ignored"


def _deliver(event, store, provider, *, secret=WEBHOOK_SECRET, header=None):
    body = encode_event(event)
    return process_webhook(body, header or sign(body), secret, store=store, provider=provider)


def test_process_webhook_rejects_bad_signature_before_dispatch(store, provider):
    store.add_user("cus_1", uuid4())
    event = checkout_event(metadata={"courseId": str(uuid4())})

    result = _deliver(event, store, provider, header=sign(encode_event(event), secret="whsec_wrong"))

    assert result.status_code == 400
    assert result.detail == "Webhook signature verification failed."
    assert store.calls == []


def test_process_webhook_unknown_type_is_acknowledged(store, provider):
    result = _deliver({"id": "evt_x", "type": "customer.created", "data": {"object": {}}}, store, provider)

    assert result.status_code == 200
    assert result.outcome == "ignored"
    assert store.calls == []
    assert provider.retrieve_calls == []


def test_process_webhook_maps_handler_errors_to_500(store, provider):
    result = _deliver(subscription_event(customer="cus_missing"), store, provider)

    assert result.status_code == 500
    assert result.event_id == "evt_sub_1"
    assert result.event_type == "customer.subscription.updated"
    assert result.detail == "Error processing webhook"


def test_process_webhook_maps_malformed_payload_to_500(store, provider):
    event = subscription_event()
    del event["data"]["object"]["status"]

    result = _deliver(event, store, provider)

    assert result.status_code == 500
    assert store.writes == []


def test_process_webhook_maps_unexpected_errors_to_500(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider(error=RuntimeError("network down"))

    result = _deliver(subscription_event(start=None), store, provider)

    assert result.status_code == 500
    assert store.writes == []


def test_zero_period_bound_triggers_compensating_read(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider({"id": "sub_1", "current_period_start": 1710000000, "current_period_end": 1712592000})

    upsert_subscription_from_event(_subscription(start=0), store=store, provider=provider)

    assert len(provider.retrieve_calls) == 1
    assert store.subscriptions["sub_1"].current_period_start == 1710000000000


def test_zero_period_after_compensating_read_writes_nothing(store):
    store.add_user("cus_1", uuid4())
    provider = FakeProvider({"id": "sub_1", "current_period_start": 0, "current_period_end": 1712592000})

    with pytest.raises(DataIntegrityError) as exc_info:
        upsert_subscription_from_event(_subscription(start=None), store=store, provider=provider)

    assert exc_info.value.context["field"] == "current_period_start"
    assert store.writes == []
