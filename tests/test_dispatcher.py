"""DeliveryDispatcher: recipients, dedup by idempotency key, inline first attempt."""

import asyncio
from datetime import timedelta

import pytest

from eitcrm.common.errors import DispatchInputError, StudentNotFoundError
from eitcrm.services.delivery.dispatcher import DeliveryDispatcher, derive_idempotency_key
from eitcrm.services.delivery.schemas import Actor, DispatchOptions


@pytest.fixture
def dispatcher(session_factory, store, transport):
    return DeliveryDispatcher(
        session_factory,
        store,
        transport,
        max_attempts=3,
        backoff=lambda attempt: timedelta(minutes=attempt),
    )


STAFF = Actor(type="USER", id="teacher-1")


def test_idempotency_key_precedence():
    explicit = DispatchOptions(idempotency_key="K", source_type="REPORT", source_id="9")
    sourced = DispatchOptions(source_type="REPORT", source_id="9")
    assert derive_idempotency_key("s1", "hi", STAFF, explicit) == "K"
    assert derive_idempotency_key("s1", "hi", STAFF, sourced) == "REPORT:9"
    hashed = derive_idempotency_key("s1", "hi", STAFF, DispatchOptions())
    assert len(hashed) == 64
    assert hashed == derive_idempotency_key("s1", "hi", STAFF, DispatchOptions())
    assert hashed != derive_idempotency_key("s1", "hi!", STAFF, DispatchOptions())


@pytest.mark.asyncio
async def test_linked_and_unlinked_parents_each_get_an_outcome(dispatcher, make_student, transport):
    student, (mom, dad) = make_student(parents=[("Mom", "+998901112233", "111"), ("Dad", "+998901112234", None)])

    result = await dispatcher.dispatch(student.id, "Report ready", STAFF, DispatchOptions(source_type="REPORT", source_id="r1"))

    assert result.total_parents == 2
    assert result.parents_with_telegram == 1
    assert result.created == 1
    by_parent = {outcome.parent_id: outcome for outcome in result.results}
    assert by_parent[mom.id].status == "SENT"
    assert by_parent[dad.id].status == "NO_CHAT"
    assert by_parent[dad.id].delivery_id is None
    assert [call["chat_id"] for call in transport.sent] == ["111"]


@pytest.mark.asyncio
async def test_failed_first_attempt_is_not_resent_inside_backoff(dispatcher, make_student, transport, store):
    student, (mom,) = make_student(parents=[("Mom", "1", "111")])
    transport.fail_next("Bad Gateway")
    options = DispatchOptions(source_type="REPORT", source_id="r2")

    first = await dispatcher.dispatch(student.id, "Report", STAFF, options)
    second = await dispatcher.dispatch(student.id, "Report", STAFF, options)

    assert first.results[0].status == "FAILED"
    assert first.results[0].error == "Bad Gateway"
    assert second.created == 0
    assert second.results[0].status == "PENDING"
    assert second.results[0].delivery_id == first.results[0].delivery_id
    assert len(transport.sent) == 1
    row = store.get(first.results[0].delivery_id)
    assert row.attempt_count == 1
    assert row.status == "FAILED"


@pytest.mark.asyncio
async def test_force_bypasses_backoff_window(dispatcher, make_student, transport):
    student, _ = make_student(parents=[("Mom", "1", "111")])
    transport.fail_next("Bad Gateway")
    await dispatcher.dispatch(student.id, "Report", STAFF, DispatchOptions(idempotency_key="k-force"))

    forced = await dispatcher.dispatch(student.id, "Report", STAFF, DispatchOptions(idempotency_key="k-force", force=True))

    assert forced.results[0].status == "SENT"
    assert len(transport.sent) == 2


@pytest.mark.asyncio
async def test_repeated_dispatch_never_double_sends(dispatcher, make_student, transport):
    student, _ = make_student(parents=[("Mom", "1", "111"), ("Dad", "2", "222")])
    options = DispatchOptions(source_type="SUPPORT_SESSION", source_id="s-1")

    results = [await dispatcher.dispatch(student.id, "Session summary", STAFF, options) for _ in range(3)]

    assert sorted(call["chat_id"] for call in transport.sent) == ["111", "222"]
    assert all(outcome.status == "SENT" for outcome in results[-1].results)
    assert sum(result.created for result in results) == 2


@pytest.mark.asyncio
async def test_concurrent_dispatches_send_once_per_parent(dispatcher, make_student, transport):
    student, _ = make_student(parents=[("Mom", "1", "111")])
    options = DispatchOptions(idempotency_key="same-intent")

    await asyncio.gather(*(dispatcher.dispatch(student.id, "Hello", STAFF, options) for _ in range(4)))

    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_reported_as_failed(dispatcher, make_student, transport, store):
    student, _ = make_student(parents=[("Mom", "1", "111")])
    transport.fail_next("Forbidden: bot was blocked by the user", permanent=True)

    result = await dispatcher.dispatch(student.id, "Hello", STAFF, DispatchOptions(idempotency_key="blocked"))
    again = await dispatcher.dispatch(student.id, "Hello", STAFF, DispatchOptions(idempotency_key="blocked"))

    row = store.get(result.results[0].delivery_id)
    assert row.status == "UNDELIVERABLE"
    assert row.next_retry_at is None
    assert again.results[0].status == "FAILED"
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_parse_mode_is_normalized(dispatcher, make_student, transport):
    student, _ = make_student(parents=[("Mom", "1", "111")])

    await dispatcher.dispatch(student.id, "<b>Hi</b>", STAFF, DispatchOptions(parse_mode="HTML", idempotency_key="a"))
    await dispatcher.dispatch(student.id, "Hi", STAFF, DispatchOptions(parse_mode="Markdown", idempotency_key="b"))

    assert [call["parse_mode"] for call in transport.sent] == ["HTML", None]


@pytest.mark.asyncio
async def test_input_errors_create_nothing(dispatcher, make_student, store):
    student, (mom,) = make_student(parents=[("Mom", "1", "111")])

    with pytest.raises(DispatchInputError):
        await dispatcher.dispatch(student.id, "   ", STAFF)
    with pytest.raises(DispatchInputError):
        await dispatcher.dispatch("", "Hello", STAFF)
    with pytest.raises(StudentNotFoundError):
        await dispatcher.dispatch("missing-student", "Hello", STAFF)

    assert store.find_for_key(derive_idempotency_key(student.id, "   ", STAFF, DispatchOptions()), [mom.id]) == []
