import asyncio
import logging
import os
import time
from urllib.parse import urlparse

from aiogram import Bot, Dispatcher, F, types
from aiogram.filters import Command
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from admin import ADMIN_IDS, admin_router
from db import (
    get_last_notification,
    get_subscriber,
    init_db,
    list_keyed_subscribers,
    set_last_notification,
)
from panel_api import PanelClient, PanelError
from payments import GatewayError, PlategaGateway
from provisioning import (
    TIERS,
    PaymentNotFound,
    Provisioner,
    PremiumActive,
    TrialAlreadyUsed,
    UnknownTier,
    month_word,
)
from webhook import start_webhook_server

TOKEN = os.getenv("BOT_TOKEN")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

if not TOKEN:
    raise RuntimeError("BOT_TOKEN not configured")

bot = Bot(token=TOKEN)
dp = Dispatcher()

PANEL_URL = os.getenv("PANEL_URL", "")
VPN_HOST = os.getenv("VPN_HOST") or urlparse(PANEL_URL).hostname or "your-domain"
TRIAL_INBOUND_ID = int(os.getenv("TRIAL_INBOUND_ID", "1"))
PREMIUM_INBOUND_ID = int(os.getenv("PREMIUM_INBOUND_ID", "2"))
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "15"))

WEBHOOK_BASE_URL = os.getenv("WEBHOOK_BASE_URL", "")
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "3000"))
APP_ENV = os.getenv("APP_ENV", "development")

DELETE_DELAY = int(os.getenv("DELETE_DELAY", "30"))

panel = PanelClient(
    PANEL_URL,
    os.getenv("PANEL_USERNAME", ""),
    os.getenv("PANEL_PASSWORD", ""),
    timeout=HTTP_TIMEOUT,
)
gateway = PlategaGateway(
    merchant_id=os.getenv("PLATEGA_MERCHANT_ID"),
    secret=os.getenv("PLATEGA_SECRET"),
    webhook_secret=os.getenv("PLATEGA_WEBHOOK_SECRET"),
    base_url=os.getenv("PLATEGA_BASE_URL", "https://app.platega.io"),
    callback_base_url=WEBHOOK_BASE_URL,
    timeout=HTTP_TIMEOUT,
)

# handlers in admin_router receive the panel client as a keyword argument
dp["panel"] = panel


def build_vless_link(client_id: str, name: str) -> str:
    return (
        f"vless://{client_id}@{VPN_HOST}:443?security=reality&type=grpc&fp=chrome"
        f"&sni=google.com&serviceName=grpc#Portal_{name}"
    )


def format_date(ts: int) -> str:
    return time.strftime("%d.%m.%Y %H:%M", time.localtime(ts))


def main_menu_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🔗 Подключить VPN", callback_data="trial")],
            [InlineKeyboardButton(text="💎 Купить подписку", callback_data="buy")],
        ]
    )


def tiers_kb() -> InlineKeyboardMarkup:
    buttons = [
        InlineKeyboardButton(
            text=f"{tier.months} {month_word(tier.months)} - {tier.price}₽",
            callback_data=f"tier_{tier.key}",
        )
        for tier in TIERS.values()
    ]
    rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    rows.insert(0, [InlineKeyboardButton(text="Пробный период 📅", callback_data="trial_info")])
    rows.append([InlineKeyboardButton(text="Вернуться ↩️", callback_data="main_menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def buy_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text="💎 Купить Premium", callback_data="buy")]]
    )


def _profile(user) -> dict:
    return {
        "username": getattr(user, "username", None),
        "first_name": getattr(user, "first_name", None),
        "last_name": getattr(user, "last_name", None),
    }


async def send_temporary(
    bot: Bot, chat_id: int, text: str, delay: int = DELETE_DELAY, **kwargs
) -> types.Message:
    msg = await bot.send_message(chat_id, text, **kwargs)

    async def _remove() -> None:
        await asyncio.sleep(delay)
        try:
            await bot.delete_message(chat_id, msg.message_id)
        except Exception as exc:
            logging.error("Failed to delete message: %s", exc)

    asyncio.create_task(_remove())
    return msg


async def send_activation_prompt(chat_id, client_id: str, expires_at: int, name: str) -> None:
    """Send the key and short connection instructions."""
    link = build_vless_link(client_id, name)
    text = (
        "🔑 Ваш ключ доступа готов:\n"
        f"<code>{link}</code>\n\n"
        "Как подключиться:\n"
        "1. Скачайте приложение V2RayTun или Happ.\n"
        "2. Скопируйте ключ выше.\n"
        "3. В приложении нажмите «+» и выберите «Import from Clipboard».\n"
        "4. Нажмите на кнопку подключения.\n\n"
        f"📅 Действует до: {format_date(expires_at)}"
    )
    await bot.send_message(chat_id, text, parse_mode="HTML", reply_markup=buy_kb())


class TelegramNotifier:
    """Delivers workflow outcomes to users and operators over Telegram."""

    def __init__(self, bot: Bot, admin_ids: list[int]) -> None:
        self.bot = bot
        self.admin_ids = admin_ids

    async def _send(self, chat_id, text: str, **kwargs) -> None:
        try:
            await self.bot.send_message(chat_id, text, **kwargs)
        except Exception as exc:
            logging.error("Failed to send message to %s: %s", chat_id, exc)

    async def key_granted(self, subscriber, intent) -> None:
        months = intent.subscription_months
        await self._send(
            subscriber.user_id,
            f"🎉 Оплата прошла успешно!\n💎 Premium активирован на {months} {month_word(months)}.",
        )
        try:
            await send_activation_prompt(
                subscriber.user_id,
                subscriber.active_key.client_id,
                subscriber.active_key.expires_at,
                f"Premium_{subscriber.first_name or subscriber.user_id}",
            )
        except Exception as exc:
            logging.error("Failed to send key to %s: %s", subscriber.user_id, exc)

    async def payment_failed(self, user_id, intent) -> None:
        await self._send(
            user_id,
            "❌ Оплата не прошла.\n\nПопробуйте ещё раз или обратитесь в поддержку.",
            reply_markup=buy_kb(),
        )

    async def activation_failed(self, user_id, intent) -> None:
        await self._send(
            user_id,
            "⚠️ Оплата прошла успешно, но возникла проблема с активацией ключа. "
            "Мы уже разбираемся, обратитесь в поддержку и укажите номер платежа: "
            f"{intent.transaction_id}",
        )

    async def operator_alert(self, alert_id, user_id, intent, reason: str) -> None:
        text = (
            f"🚨 Инцидент #{alert_id}\n"
            f"Пользователь: {user_id}\n"
            f"Платёж: {intent.transaction_id} ({intent.amount} {intent.currency}, "
            f"{intent.subscription_months} мес.)\n"
            f"{reason}"
        )
        if not self.admin_ids:
            logging.error("No admins configured for alert #%s: %s", alert_id, reason)
        for admin_id in self.admin_ids:
            await self._send(admin_id, text)


notifier = TelegramNotifier(bot, ADMIN_IDS)
provisioner = Provisioner(
    panel,
    gateway,
    notifier,
    trial_inbound_id=TRIAL_INBOUND_ID,
    premium_inbound_id=PREMIUM_INBOUND_ID,
)


async def notify_expirations_loop(interval: int = 60 * 60) -> None:
    """Periodically check VPN subscriptions and send reminders."""
    while True:
        now = int(time.time())
        for sub in await list_keyed_subscribers():
            expires_at = sub.active_key.expires_at
            days_left = (expires_at - now + 86399) // 86400
            last = await get_last_notification(sub.user_id)
            if last and now - last < 24 * 60 * 60:
                continue
            text = None
            if days_left == 3:
                text = (
                    "⏳ Напоминаем: срок действия вашего VPN скоро закончится!\n"
                    "📅 Осталось всего 3 дня. Не забудьте продлить."
                )
            elif days_left == 0:
                text = (
                    "🚫 Срок действия вашего VPN закончился.\n"
                    "🔥 Продлите подписку, и доступ восстановится в считанные минуты!"
                )
            if text:
                try:
                    await bot.send_message(sub.user_id, text, reply_markup=buy_kb())
                    await set_last_notification(sub.user_id, now)
                except Exception as exc:
                    logging.error("Failed to send notification: %s", exc)
        await asyncio.sleep(interval)


@dp.message(Command("start"))
async def cmd_start(message: types.Message):
    try:
        await provisioner.register(message.from_user.id, **_profile(message.from_user))
    except Exception as exc:
        logging.error("Failed to register user %s: %s", message.from_user.id, exc)
        await message.answer("Произошла ошибка. Попробуйте позже.")
        return
    text = (
        "Portal - твой личный выход в свободный интернет.\n\n"
        "🚀 Максимальная скорость без ограничений.\n"
        "🛡 Мы не храним логи, трафик зашифрован.\n"
        "🎁 3 дня бесплатного теста для всех новых пользователей.\n"
        "📱 Работает на iPhone, Android, ПК и Mac."
    )
    await message.answer(text)
    await message.answer("Главное меню 🏠\nВыберите действие:", reply_markup=main_menu_kb())


@dp.callback_query(F.data == "main_menu")
async def callback_main_menu(callback: types.CallbackQuery):
    await callback.message.answer("Главное меню 🏠\nВыберите действие:", reply_markup=main_menu_kb())
    await callback.answer()


@dp.callback_query(F.data == "trial")
async def callback_trial(callback: types.CallbackQuery):
    user = callback.from_user
    try:
        sub = await provisioner.request_trial(user.id, **_profile(user))
    except (TrialAlreadyUsed, PremiumActive) as exc:
        sub = exc.subscriber
        if sub.has_access():
            await send_activation_prompt(
                callback.message.chat.id,
                sub.active_key.client_id,
                sub.active_key.expires_at,
                user.first_name or str(user.id),
            )
        else:
            await send_temporary(
                bot,
                callback.message.chat.id,
                "⚠️ Вы уже использовали пробный период.",
                reply_markup=buy_kb(),
            )
    except PanelError as exc:
        logging.error("Failed to create trial key for %s: %s", user.id, exc)
        await send_temporary(
            bot,
            callback.message.chat.id,
            "😔 Не удалось создать ключ. Попробуйте ещё раз через пару минут.",
            reply_markup=main_menu_kb(),
        )
    else:
        await send_activation_prompt(
            callback.message.chat.id,
            sub.active_key.client_id,
            sub.active_key.expires_at,
            user.first_name or str(user.id),
        )
    await callback.answer()


@dp.callback_query(F.data == "buy")
async def callback_buy(callback: types.CallbackQuery):
    lines = [f"• {t.months} {month_word(t.months)} - {t.price}₽" for t in TIERS.values()]
    await callback.message.answer(
        "Тарифы Portal VPN:\n\n" + "\n".join(lines), reply_markup=tiers_kb()
    )
    await callback.answer()


@dp.callback_query(F.data == "trial_info")
async def callback_trial_info(callback: types.CallbackQuery):
    await callback.message.answer(
        "⏳ Пробный период\n\nМы предоставляем 3 дня бесплатного доступа. "
        "После окончания пробного периода вы сможете выбрать любой тариф.",
        reply_markup=InlineKeyboardMarkup(
            inline_keyboard=[
                [InlineKeyboardButton(text="🔗 Подключиться", callback_data="trial")],
                [InlineKeyboardButton(text="🔙 Назад", callback_data="buy")],
            ]
        ),
    )
    await callback.answer()


@dp.callback_query(F.data.startswith("tier_"))
async def callback_tier(callback: types.CallbackQuery):
    tier_key = callback.data[len("tier_"):]
    user = callback.from_user
    try:
        intent = await provisioner.select_tier(user.id, tier_key, **_profile(user))
    except UnknownTier:
        await callback.answer("Тариф не найден", show_alert=True)
        return
    except GatewayError as exc:
        logging.error("Failed to create payment for %s: %s", user.id, exc)
        await callback.message.answer(
            "❌ Оплата сейчас недоступна. Попробуйте позже или обратитесь в поддержку.",
            reply_markup=InlineKeyboardMarkup(
                inline_keyboard=[[InlineKeyboardButton(text="🔙 Назад", callback_data="buy")]]
            ),
        )
        await callback.answer()
        return
    months = intent.subscription_months
    kb = InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="💳 Оплатить", url=intent.payment_url)],
            [
                InlineKeyboardButton(
                    text="🔍 Проверить статус",
                    callback_data=f"check_payment_{intent.transaction_id}",
                )
            ],
            [InlineKeyboardButton(text="❌ Отменить", callback_data="cancel_payment")],
        ]
    )
    await callback.message.answer(
        "💳 Оплата подписки\n\n"
        f"📦 Тариф: {months} {month_word(months)}\n"
        f"💰 Сумма: {intent.amount}₽\n\n"
        "После успешной оплаты вы автоматически получите ключ доступа.",
        reply_markup=kb,
    )
    await callback.answer()


STATUS_EMOJI = {
    "pending": "⏳",
    "success": "✅",
    "failed": "❌",
    "cancelled": "🚫",
    "refunded": "↩️",
}


@dp.callback_query(F.data.startswith("check_payment_"))
async def callback_check_payment(callback: types.CallbackQuery):
    transaction_id = callback.data[len("check_payment_"):]
    try:
        status = await provisioner.check_payment(callback.from_user.id, transaction_id)
    except PaymentNotFound:
        await callback.message.answer("Платёж не найден.")
    except GatewayError as exc:
        logging.error("Failed to check payment %s: %s", transaction_id, exc)
        await callback.message.answer("Не удалось проверить статус платежа. Попробуйте позже.")
    else:
        text = f"{STATUS_EMOJI.get(status, '❓')} Статус платежа: {status}"
        if status == "pending":
            text += "\n\nОжидаем подтверждения оплаты..."
        await callback.message.answer(text)
    await callback.answer()


@dp.callback_query(F.data == "cancel_payment")
async def callback_cancel_payment(callback: types.CallbackQuery):
    await callback.message.answer("Оплата отменена.", reply_markup=main_menu_kb())
    await callback.answer()


@dp.message(Command("key"))
async def menu_keys(message: types.Message):
    sub = await get_subscriber(str(message.from_user.id))
    if sub is None or sub.active_key is None:
        await send_temporary(bot, message.chat.id, "У вас нет активного ключа.")
        return
    if not sub.has_access():
        await send_temporary(
            bot,
            message.chat.id,
            "Срок действия вашего ключа истёк.",
            reply_markup=buy_kb(),
        )
        return
    await send_activation_prompt(
        message.chat.id,
        sub.active_key.client_id,
        sub.active_key.expires_at,
        message.from_user.first_name or sub.user_id,
    )


@dp.message(Command("help"))
async def cmd_help(message: types.Message):
    await message.answer(
        "/start - главное меню\n"
        "/key - ваш ключ доступа\n"
        "/help - эта справка\n\n"
        "Если оплата прошла, а ключ не пришёл, напишите в поддержку и укажите номер платежа."
    )


def check_webhook_security() -> None:
    if APP_ENV == "production" and not gateway.webhook_secret:
        raise RuntimeError("PLATEGA_WEBHOOK_SECRET must be set in production")
    if not gateway.webhook_secret:
        logging.warning("Running without webhook signature verification")


async def main() -> None:
    check_webhook_security()
    await init_db()
    dp.include_router(admin_router)
    runner = await start_webhook_server(provisioner, WEBHOOK_HOST, WEBHOOK_PORT)
    logging.info("Webhook URL: %s", gateway.callback_url)
    asyncio.create_task(notify_expirations_loop())
    try:
        await dp.start_polling(bot)
    finally:
        await runner.cleanup()
        await panel.close()


if __name__ == "__main__":
    asyncio.run(main())
