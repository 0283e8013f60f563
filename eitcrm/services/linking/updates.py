"""Parse raw Telegram webhook bodies into a small typed sum before routing.

Business logic only ever sees `MessageUpdate` or `CallbackUpdate`; anything
else becomes `UnrecognizedUpdate` with a reason and is recorded as IGNORED.
Chat and user ids are converted to strings here, once.
"""

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError


class _TgModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TgUser(_TgModel):
    id: StrictInt | None = None
    first_name: StrictStr | None = None
    last_name: StrictStr | None = None


class TgChat(_TgModel):
    id: StrictInt | None = None


class TgContact(_TgModel):
    phone_number: StrictStr | None = None
    user_id: StrictInt | None = None


class TgMessage(_TgModel):
    chat: TgChat | None = None
    from_: TgUser | None = Field(default=None, alias="from")
    text: StrictStr | None = None
    contact: TgContact | None = None


class TgCallbackQuery(_TgModel):
    id: StrictStr | None = None
    data: StrictStr | None = None
    from_: TgUser | None = Field(default=None, alias="from")
    message: TgMessage | None = None


class TgUpdate(_TgModel):
    update_id: StrictInt
    message: TgMessage | None = None
    callback_query: TgCallbackQuery | None = None


@dataclass(frozen=True, slots=True)
class Contact:
    phone_number: str
    user_id: str | None


@dataclass(frozen=True, slots=True)
class MessageUpdate:
    update_id: int
    chat_id: str
    from_id: str | None
    text: str
    contact: Contact | None = None
    sender_name: str = ""


@dataclass(frozen=True, slots=True)
class CallbackUpdate:
    update_id: int
    callback_id: str
    chat_id: str
    data: str
    from_id: str | None = None


@dataclass(frozen=True, slots=True)
class UnrecognizedUpdate:
    update_id: int
    reason: str


RecognizedUpdate = MessageUpdate | CallbackUpdate | UnrecognizedUpdate


def _str_id(value: int | None) -> str | None:
    return None if value is None else str(value)


def update_kind(update: RecognizedUpdate) -> str:
    if isinstance(update, CallbackUpdate):
        return "callback_query"
    if isinstance(update, MessageUpdate):
        return "contact" if update.contact else "message"
    return "unrecognized"


def parse_update(body: dict) -> RecognizedUpdate:
    """Validate the envelope shape and collapse it into one variant."""

    update_id = body.get("update_id")
    try:
        envelope = TgUpdate.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        return UnrecognizedUpdate(update_id=update_id, reason=f"Malformed update at {location}")

    callback = envelope.callback_query
    if callback is not None:
        chat = callback.message.chat if callback.message else None
        if not callback.id or callback.data is None or chat is None or chat.id is None:
            return UnrecognizedUpdate(update_id=envelope.update_id, reason="Bad callback_query")
        return CallbackUpdate(
            update_id=envelope.update_id,
            callback_id=callback.id,
            chat_id=str(chat.id),
            data=callback.data,
            from_id=_str_id(callback.from_.id if callback.from_ else None),
        )

    message = envelope.message
    if message is None:
        return UnrecognizedUpdate(update_id=envelope.update_id, reason="No message object")
    if message.chat is None or message.chat.id is None:
        return UnrecognizedUpdate(update_id=envelope.update_id, reason="No chat.id")

    contact = None
    if message.contact is not None and message.contact.phone_number:
        contact = Contact(
            phone_number=message.contact.phone_number,
            user_id=_str_id(message.contact.user_id),
        )
    sender = message.from_
    sender_name = " ".join(part for part in (sender.first_name, sender.last_name) if part) if sender else ""
    return MessageUpdate(
        update_id=envelope.update_id,
        chat_id=str(message.chat.id),
        from_id=_str_id(sender.id if sender else None),
        text=message.text or "",
        contact=contact,
        sender_name=sender_name,
    )
