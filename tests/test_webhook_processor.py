"""WebhookProcessor: update dedupe, contact-share confirmation, callbacks, invite codes."""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from sqlalchemy import select

from eitcrm.common.models import AnalyticsEvent, Parent
from eitcrm.services.linking import messages
from eitcrm.services.linking.models import ParentInvite, TelegramPendingLink, TelegramUpdate
from eitcrm.services.linking.processor import WebhookProcessor

CHAT = 555
USER = 777
_update_ids = count(1)


@pytest.fixture
def processor(session_factory, transport):
    return WebhookProcessor(session_factory, transport, pending_link_ttl=timedelta(minutes=15))


def message(text=None, contact=None, chat=CHAT, sender=USER, update_id=None):
    body = {"chat": {"id": chat, "type": "private"}, "from": {"id": sender, "first_name": "Dilnoza"}}
    if text is not None:
        body["text"] = text
    if contact is not None:
        body["contact"] = contact
    return {"update_id": update_id or next(_update_ids), "message": body}


def callback(data, chat=CHAT, update_id=None):
    return {
        "update_id": update_id or next(_update_ids),
        "callback_query": {"id": f"cb-{data}", "data": data, "from": {"id": USER}, "message": {"chat": {"id": chat}}},
    }


def stored_update(session_factory, update_id):
    with session_factory() as db:
        return db.get(TelegramUpdate, update_id)


def get_parent(session_factory, parent_id):
    with session_factory() as db:
        return db.get(Parent, parent_id)


def pending_for_chat(session_factory, chat=CHAT):
    with session_factory() as db:
        return db.scalars(select(TelegramPendingLink).where(TelegramPendingLink.chat_id == str(chat))).one_or_none()


def add_invite(session_factory, student_id, code="eitabc123", status="ACTIVE"):
    with session_factory() as db:
        db.add(ParentInvite(code=code, student_id=student_id, status=status))
        db.commit()


# ---- inbox -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_bare_start_sends_contact_request(processor, session_factory, transport):
    body = message("/start")

    outcome = await processor.handle(body)

    assert outcome.status == "PROCESSED"
    (sent,) = transport.sent
    assert sent["chat_id"] == str(CHAT)
    assert sent["text"] == messages.START_PROMPT
    assert sent["reply_markup"]["keyboard"][0][0]["request_contact"] is True
    row = stored_update(session_factory, body["update_id"])
    assert row.status == "PROCESSED"
    assert row.processed_at is not None
    assert row.payload == body


@pytest.mark.asyncio
async def test_replayed_update_id_is_a_no_op(processor, session_factory, transport):
    body = message("/start")

    first = await processor.handle(body)
    second = await processor.handle(body)

    assert first.status == "PROCESSED"
    assert second.status == "DUPLICATE"
    assert len(transport.sent) == 1
    with session_factory() as db:
        assert db.query(TelegramUpdate).count() == 1


@pytest.mark.asyncio
async def test_body_without_update_id_stores_nothing(processor, session_factory):
    assert (await processor.handle({"message": {}})).status == "SKIPPED"
    assert (await processor.handle({"update_id": "12"})).status == "SKIPPED"
    assert (await processor.handle(["not", "a", "dict"])).status == "SKIPPED"
    with session_factory() as db:
        assert db.query(TelegramUpdate).count() == 0


@pytest.mark.asyncio
async def test_unrecognized_shapes_are_ignored_with_reason(processor, session_factory, transport):
    no_message = {"update_id": next(_update_ids), "edited_message": {"chat": {"id": CHAT}}}
    no_chat = {"update_id": next(_update_ids), "message": {"text": "hi"}}

    assert (await processor.handle(no_message)).status == "IGNORED"
    assert (await processor.handle(no_chat)).status == "IGNORED"
    assert stored_update(session_factory, no_message["update_id"]).error == "No message object"
    assert stored_update(session_factory, no_chat["update_id"]).error == "No chat.id"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_plain_text_is_ignored(processor, transport):
    assert (await processor.handle(message("hello?"))).status == "IGNORED"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_processing_exception_marks_error_and_is_absorbed(processor, session_factory, transport, monkeypatch):
    async def boom(msg):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(processor, "_propose_link", boom)
    body = message(contact={"phone_number": "+998901112233", "user_id": USER})

    outcome = await processor.handle(body)

    assert outcome.status == "ERROR"
    row = stored_update(session_factory, body["update_id"])
    assert row.status == "ERROR"
    assert "db exploded" in row.error
    assert transport.sent[-1]["text"] == messages.SERVER_ERROR


# ---- contact share -----------------------------------------------------------


@pytest.mark.asyncio
async def test_foreign_contact_is_rejected_without_mutation(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    body = message(contact={"phone_number": "+998901112233", "user_id": 999})

    outcome = await processor.handle(body)

    assert outcome.status == "IGNORED"
    assert outcome.reason == "Contact user mismatch"
    assert transport.sent[-1]["text"] == messages.CONTACT_NOT_OWN
    assert get_parent(session_factory, mom.id).telegram_chat_id is None
    assert pending_for_chat(session_factory) is None


@pytest.mark.asyncio
async def test_unknown_phone_is_ignored(processor, transport, make_student):
    make_student(parents=[("Mom", "+998901112233", None)])

    outcome = await processor.handle(message(contact={"phone_number": "+998935550000", "user_id": USER}))

    assert outcome.status == "IGNORED"
    assert transport.sent[-1]["text"] == messages.PHONE_NOT_FOUND


@pytest.mark.asyncio
async def test_contact_proposes_link_and_waits_for_confirmation(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(name="Ali", group_name="A2", parents=[("Mom", "901112233", None)])

    outcome = await processor.handle(message(contact={"phone_number": "+998 90 111 22 33", "user_id": USER}))

    assert outcome.status == "PROCESSED"
    pending = pending_for_chat(session_factory)
    assert pending.parent_id == mom.id
    assert pending.status == "PENDING"
    # Not bound until the user presses "yes".
    assert get_parent(session_factory, mom.id).telegram_chat_id is None
    prompt = transport.sent[-1]
    assert "Ali" in prompt["text"] and "A2" in prompt["text"]
    buttons = prompt["reply_markup"]["inline_keyboard"][0]
    assert [b["callback_data"] for b in buttons] == [f"link_yes:{pending.id}", f"link_no:{pending.id}"]


@pytest.mark.asyncio
async def test_contact_matches_phone_stored_with_separators(processor, session_factory, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998 (90) 111-22-33", None)])

    outcome = await processor.handle(message(contact={"phone_number": "998901112233", "user_id": USER}))

    assert outcome.status == "PROCESSED"
    assert pending_for_chat(session_factory).parent_id == mom.id


@pytest.mark.asyncio
async def test_parent_linked_to_another_chat_is_not_reproposed(processor, session_factory, transport, make_student):
    make_student(parents=[("Mom", "+998901112233", "424242")])

    outcome = await processor.handle(message(contact={"phone_number": "+998901112233", "user_id": USER}))

    assert outcome.status == "IGNORED"
    assert transport.sent[-1]["text"] == messages.PARENT_LINKED_ELSEWHERE
    assert pending_for_chat(session_factory) is None


# ---- confirm / reject ----------------------------------------------------------


async def _propose(processor, session_factory):
    await processor.handle(message(contact={"phone_number": "+998901112233", "user_id": USER}))
    return pending_for_chat(session_factory)


@pytest.mark.asyncio
async def test_confirm_binds_chat_and_audits(processor, session_factory, transport, make_student):
    student, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)

    outcome = await processor.handle(callback(f"link_yes:{pending.id}"))

    assert outcome.status == "PROCESSED"
    assert get_parent(session_factory, mom.id).telegram_chat_id == str(CHAT)
    assert pending_for_chat(session_factory).status == "CONFIRMED"
    assert transport.answers[-1]["text"] == messages.CALLBACK_LINKED
    assert transport.sent[-1]["reply_markup"] == {"remove_keyboard": True}
    with session_factory() as db:
        event = db.scalars(select(AnalyticsEvent)).one()
    assert event.name == "parent_linked"
    assert event.actor_id == mom.id
    assert event.student_id == student.id
    assert event.props == {"method": "contact_confirm"}


@pytest.mark.asyncio
async def test_second_confirm_is_already_handled(processor, session_factory, transport, make_student):
    make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)
    await processor.handle(callback(f"link_yes:{pending.id}"))

    again = await processor.handle(callback(f"link_yes:{pending.id}"))

    assert again.status == "IGNORED"
    assert transport.answers[-1]["text"] == messages.CALLBACK_ALREADY_HANDLED
    assert transport.sent[-1]["text"] == messages.PENDING_ALREADY_HANDLED
    with session_factory() as db:
        assert db.query(AnalyticsEvent).count() == 1


@pytest.mark.asyncio
async def test_expired_confirm_does_not_bind(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)
    with session_factory() as db:
        db.get(TelegramPendingLink, pending.id).expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        db.commit()

    outcome = await processor.handle(callback(f"link_yes:{pending.id}"))

    assert outcome.status == "IGNORED"
    assert outcome.reason == "Pending link expired"
    assert transport.answers[-1]["text"] == messages.CALLBACK_EXPIRED
    assert get_parent(session_factory, mom.id).telegram_chat_id is None


@pytest.mark.asyncio
async def test_refreshed_proposal_makes_old_buttons_stale(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    old = await _propose(processor, session_factory)
    new = await _propose(processor, session_factory)

    stale = await processor.handle(callback(f"link_yes:{old.id}"))

    assert new.id != old.id
    assert stale.status == "IGNORED"
    assert transport.answers[-1]["text"] == messages.CALLBACK_NOT_FOUND
    assert get_parent(session_factory, mom.id).telegram_chat_id is None


@pytest.mark.asyncio
async def test_confirm_from_another_chat_is_not_found(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)

    outcome = await processor.handle(callback(f"link_yes:{pending.id}", chat=CHAT + 1))

    assert outcome.status == "IGNORED"
    assert get_parent(session_factory, mom.id).telegram_chat_id is None


@pytest.mark.asyncio
async def test_reject_closes_the_proposal(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)

    outcome = await processor.handle(callback(f"link_no:{pending.id}"))
    late_yes = await processor.handle(callback(f"link_yes:{pending.id}"))

    assert outcome.status == "PROCESSED"
    assert transport.answers[0]["text"] == messages.CALLBACK_ACCEPTED
    assert messages.LINK_CANCELLED in [call["text"] for call in transport.sent]
    assert pending_for_chat(session_factory).status == "REJECTED"
    assert late_yes.status == "IGNORED"
    assert get_parent(session_factory, mom.id).telegram_chat_id is None


@pytest.mark.asyncio
async def test_reject_after_confirm_keeps_the_link(processor, session_factory, transport, make_student):
    _, (mom,) = make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)
    await processor.handle(callback(f"link_yes:{pending.id}"))

    outcome = await processor.handle(callback(f"link_no:{pending.id}"))

    assert outcome.status == "IGNORED"
    assert transport.answers[-1]["text"] == messages.CALLBACK_ALREADY_HANDLED
    assert transport.sent[-1]["text"] == messages.PENDING_ALREADY_HANDLED
    assert messages.LINK_CANCELLED not in [call["text"] for call in transport.sent]
    assert pending_for_chat(session_factory).status == "CONFIRMED"
    assert get_parent(session_factory, mom.id).telegram_chat_id == str(CHAT)


@pytest.mark.asyncio
async def test_reject_of_unknown_proposal_is_not_found(processor, session_factory, transport, make_student):
    make_student(parents=[("Mom", "+998901112233", None)])
    pending = await _propose(processor, session_factory)

    missing = await processor.handle(callback("link_no:no-such-id"))
    foreign = await processor.handle(callback(f"link_no:{pending.id}", chat=CHAT + 1))

    assert missing.status == "IGNORED"
    assert foreign.status == "IGNORED"
    assert [a["text"] for a in transport.answers] == [messages.CALLBACK_NOT_FOUND, messages.CALLBACK_NOT_FOUND]
    assert transport.sent[-1]["text"] == messages.PENDING_NOT_FOUND
    assert messages.LINK_CANCELLED not in [call["text"] for call in transport.sent]
    assert pending_for_chat(session_factory).status == "PENDING"


@pytest.mark.asyncio
async def test_callback_exception_still_answers_the_button(processor, session_factory, transport, monkeypatch):
    async def boom(cb, pending_id):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(processor, "_confirm", boom)
    body = callback("link_yes:abc")

    outcome = await processor.handle(body)

    assert outcome.status == "ERROR"
    assert stored_update(session_factory, body["update_id"]).status == "ERROR"
    assert transport.answers[-1]["text"] == messages.CALLBACK_SERVER_ERROR
    assert transport.sent == []


@pytest.mark.asyncio
async def test_unknown_callback_data(processor, transport):
    outcome = await processor.handle(callback("something_else"))

    assert outcome.status == "IGNORED"
    assert transport.answers[-1]["text"] == messages.CALLBACK_UNKNOWN


# ---- invite codes ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_invite_binds_first_unlinked_parent(processor, session_factory, transport, make_student):
    student, (mom, dad) = make_student(parents=[("Mom", "1", None), ("Dad", "2", None)])
    add_invite(session_factory, student.id)

    outcome = await processor.handle(message("/start eitabc123"))

    assert outcome.status == "PROCESSED"
    assert get_parent(session_factory, mom.id).telegram_chat_id == str(CHAT)
    assert get_parent(session_factory, dad.id).telegram_chat_id is None
    assert transport.sent[-1]["text"] == messages.INVITE_LINKED
    with session_factory() as db:
        invite = db.scalars(select(ParentInvite)).one()
        event = db.scalars(select(AnalyticsEvent)).one()
    assert invite.status == "USED"
    assert invite.parent_id == mom.id
    assert invite.used_at is not None
    assert event.props["method"] == "invite_code"


@pytest.mark.asyncio
async def test_used_invite_cannot_bind_again(processor, session_factory, transport, make_student):
    student, (mom, dad) = make_student(parents=[("Mom", "1", None), ("Dad", "2", None)])
    add_invite(session_factory, student.id)
    await processor.handle(message("/start eitabc123"))

    second = await processor.handle(message("/start eitabc123", chat=CHAT + 1, sender=USER + 1))

    assert second.status == "IGNORED"
    assert transport.sent[-1]["text"] == messages.INVITE_INVALID
    assert get_parent(session_factory, dad.id).telegram_chat_id is None
    with session_factory() as db:
        assert db.query(AnalyticsEvent).count() == 1


@pytest.mark.asyncio
async def test_unknown_invite_code(processor, transport):
    outcome = await processor.handle(message("/start nope"))

    assert outcome.status == "IGNORED"
    assert transport.sent[-1]["text"] == messages.INVITE_INVALID


@pytest.mark.asyncio
async def test_invite_when_every_parent_is_linked(processor, session_factory, transport, make_student):
    student, _ = make_student(parents=[("Mom", "1", "111")])
    add_invite(session_factory, student.id)

    outcome = await processor.handle(message("/start eitabc123"))

    assert outcome.status == "PROCESSED"
    assert transport.sent[-1]["text"] == messages.ALREADY_LINKED
    with session_factory() as db:
        assert db.scalars(select(ParentInvite)).one().status == "ACTIVE"


@pytest.mark.asyncio
async def test_invite_for_student_without_parents_creates_one(processor, session_factory, make_student):
    student, _ = make_student(parents=[])
    add_invite(session_factory, student.id)

    outcome = await processor.handle(message("/start@EitBot eitabc123"))

    assert outcome.status == "PROCESSED"
    with session_factory() as db:
        parent = db.scalars(select(Parent).where(Parent.student_id == student.id)).one()
    assert parent.name == "Dilnoza"
    assert parent.phone == "UNKNOWN"
    assert parent.telegram_chat_id == str(CHAT)


@pytest.mark.asyncio
async def test_same_chat_may_link_to_a_second_child(processor, session_factory, make_student):
    first, (mom_a,) = make_student(name="Ali", parents=[("Mom", "1", str(CHAT))])
    second, (mom_b,) = make_student(name="Aziza", parents=[("Mom", "1", None)])
    add_invite(session_factory, second.id, code="eitsibling1")

    outcome = await processor.handle(message("/start eitsibling1"))

    assert outcome.status == "PROCESSED"
    assert get_parent(session_factory, mom_b.id).telegram_chat_id == str(CHAT)
    assert get_parent(session_factory, mom_a.id).telegram_chat_id == str(CHAT)
