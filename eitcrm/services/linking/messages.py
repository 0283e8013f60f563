"""Recipient-facing texts for the linking bot (Russian / Uzbek)."""

CONFIRM_PREFIX = "link_yes:"
REJECT_PREFIX = "link_no:"

START_PROMPT = (
    "Здравствуйте! Для подключения родительского Telegram к системе EIT "
    "отправьте свой номер телефона кнопкой ниже.\n\n"
    "Assalomu alaykum! EIT tizimiga ota-ona Telegramini ulash uchun quyidagi "
    "tugma orqali telefon raqamingizni yuboring."
)

CONTACT_BUTTON = "\U0001F4F1 Отправить номер / Raqamni yuborish"

CONTACT_NOT_OWN = (
    "❌ Пожалуйста, отправьте свой собственный номер через кнопку контакта.\n\n"
    "❌ Iltimos, kontakt tugmasi orqali aynan o‘zingizning raqamingizni yuboring."
)

PHONE_NOT_FOUND = (
    "❌ Этот номер не найден в системе EIT. Обратитесь к администратору.\n\n"
    "❌ Bu raqam EIT tizimida topilmadi. Administratorga murojaat qiling."
)

PARENT_LINKED_ELSEWHERE = (
    "❌ Этот номер уже подключён к другому Telegram-аккаунту. "
    "Обратитесь к администратору.\n\n"
    "❌ Bu raqam boshqa Telegram akkauntiga ulangan. "
    "Administratorga murojaat qiling."
)

ALREADY_CONNECTED = (
    "ℹ️ Этот Telegram уже подключён к системе EIT.\n\n"
    "ℹ️ Bu Telegram EIT tizimiga allaqachon ulangan."
)

YES_BUTTON = "✅ Да / Ha"
NO_BUTTON = "❌ Нет / Yo‘q"

CALLBACK_NOT_FOUND = "Запись не найдена / Yozuv topilmadi"
CALLBACK_ALREADY_HANDLED = "Уже обработано / Allaqachon qayta ishlangan"
CALLBACK_EXPIRED = "Время истекло / Vaqt tugadi"
CALLBACK_LINKED = "Подключено / Ulandi"
CALLBACK_ACCEPTED = "Принято / Qabul qilindi"
CALLBACK_UNKNOWN = "Неизвестная команда / Noma’lum buyruq"
CALLBACK_SERVER_ERROR = "Ошибка сервера / Server xatosi"

PENDING_NOT_FOUND = (
    "❌ Запрос подтверждения не найден или устарел.\n\n"
    "❌ Tasdiqlash so‘rovi topilmadi yoki eskirgan."
)

PENDING_ALREADY_HANDLED = (
    "ℹ️ Этот запрос уже обработан.\n\n"
    "ℹ️ Bu so‘rov allaqachon qayta ishlangan."
)

PENDING_EXPIRED = (
    "⌛ Время подтверждения истекло. Отправьте номер ещё раз.\n\n"
    "⌛ Tasdiqlash vaqti tugadi. Raqamni qaytadan yuboring."
)

LINK_CANCELLED = (
    "❌ Подключение отменено. Пожалуйста, обратитесь к администратору EIT.\n\n"
    "❌ Ulanish bekor qilindi. Iltimos, EIT administratoriga murojaat qiling."
)

INVITE_INVALID = (
    "❌ Неверный или использованный код.\n\n"
    "❌ Kod noto‘g‘ri yoki allaqachon ishlatilgan."
)

ALREADY_LINKED = (
    "ℹ️ Все родители этого ученика уже подключены.\n\n"
    "ℹ️ Bu o‘quvchining barcha ota-onalari allaqachon ulangan."
)

INVITE_LINKED = (
    "\U0001F4DA EIT LC CRM\n\n"
    "\U0001F1F7\U0001F1FA Вы успешно подключены к системе.\n"
    "Теперь вы будете получать официальные отчёты по ребёнку.\n\n"
    "—————\n\n"
    "\U0001F1FA\U0001F1FF Siz tizimga muvaffaqiyatli ulandingiz.\n"
    "Endi farzandingiz bo‘yicha hisobotlarni olasiz."
)

SERVER_ERROR = (
    "❌ Ошибка сервера. Обратитесь к администратору.\n\n"
    "❌ Server xatosi. Administratorga murojaat qiling."
)


def _group(group_name: str | None) -> str:
    return group_name or "-"


def confirm_prompt(student_name: str, group_name: str | None) -> str:
    group = _group(group_name)
    return (
        "Пожалуйста, подтвердите данные:\n\n"
        "Это ваш ребёнок?\n"
        f"\U0001F467/\U0001F466 {student_name}\n"
        f"Группа: {group}\n\n"
        "Пожалуйста, нажмите «Да», если всё верно.\n\n"
        "Ma’lumotlarni tasdiqlang:\n\n"
        "Bu sizning farzandingizmi?\n"
        f"\U0001F467/\U0001F466 {student_name}\n"
        f"Guruh: {group}\n\n"
        "Hammasi to‘g‘ri bo‘lsa, «Ha» tugmasini bosing."
    )


def confirm_buttons(pending_id: str) -> list[list[dict]]:
    return [
        [
            {"text": YES_BUTTON, "callback_data": f"{CONFIRM_PREFIX}{pending_id}"},
            {"text": NO_BUTTON, "callback_data": f"{REJECT_PREFIX}{pending_id}"},
        ]
    ]


def linked_success(student_name: str, group_name: str | None) -> str:
    group = _group(group_name)
    return (
        "✅ Подключение подтверждено.\n\n"
        f"Ученик: {student_name}\n"
        f"Группа: {group}\n\n"
        "Теперь вы будете получать отчёты и сообщения от EIT LC.\n\n"
        "✅ Ulanish tasdiqlandi.\n\n"
        f"O‘quvchi: {student_name}\n"
        f"Guruh: {group}\n\n"
        "Endi siz EIT LC dan hisobotlar va xabarlarni olasiz."
    )
