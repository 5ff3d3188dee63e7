from __future__ import annotations

import os
import time

from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message

from db import get_payment_history, get_subscriber, list_alerts, resolve_alert
from panel_api import PanelClient

# Telegram user IDs allowed to use admin commands
ADMIN_IDS = [int(x) for x in os.getenv("ADMIN_IDS", "").split(",") if x.strip()]


admin_router = Router()
router = admin_router


def _fmt_ts(ts: int | None) -> str:
    if not ts:
        return "-"
    return time.strftime("%d.%m.%Y %H:%M", time.localtime(ts))


async def _is_admin(message: Message) -> bool:
    if message.from_user and message.from_user.id in ADMIN_IDS:
        return True
    await message.answer("⛔️ У вас нет доступа.")
    return False


def _argument(message: Message) -> str | None:
    parts = (message.text or "").split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else None


@admin_router.message(Command("inbounds"))
async def cmd_inbounds(message: Message, panel: PanelClient) -> None:
    """List inbounds configured on the panel."""
    if not await _is_admin(message):
        return
    inbounds = await panel.list_inbounds()
    if not inbounds:
        await message.answer("Inbounds не найдены (или панель недоступна).")
        return
    lines = [
        f"ID: {ib.id} | {ib.remark or ib.tag} | {ib.protocol}:{ib.port}"
        + ("" if ib.enable else " | выключен")
        for ib in inbounds
    ]
    await message.answer("\n".join(lines))


@admin_router.message(Command("alerts"))
async def cmd_alerts(message: Message) -> None:
    """Show payments that were captured without a key being issued."""
    if not await _is_admin(message):
        return
    rows = await list_alerts()
    if not rows:
        await message.answer("Открытых инцидентов нет.")
        return
    lines = [
        f"#{alert_id} | user {user_id} | tx {tx} | {_fmt_ts(created)}\n{reason}"
        for alert_id, user_id, tx, reason, created in rows
    ]
    await message.answer("\n\n".join(lines))


@admin_router.message(Command("resolve"))
async def cmd_resolve(message: Message) -> None:
    if not await _is_admin(message):
        return
    arg = _argument(message)
    try:
        alert_id = int(arg)
    except (TypeError, ValueError):
        await message.answer("Использование: /resolve <id>")
        return
    if await resolve_alert(alert_id):
        await message.answer(f"Инцидент #{alert_id} закрыт.")
    else:
        await message.answer("Инцидент не найден или уже закрыт.")


@admin_router.message(Command("subscriber"))
async def cmd_subscriber(message: Message) -> None:
    """Show the stored record and payment history of a user."""
    if not await _is_admin(message):
        return
    user_id = _argument(message)
    if not user_id:
        await message.answer("Использование: /subscriber <user_id>")
        return
    sub = await get_subscriber(user_id)
    if sub is None:
        await message.answer("Пользователь не найден.")
        return
    key = sub.active_key
    lines = [
        f"ID: {sub.user_id} (@{sub.username or '-'})",
        f"Статус: {sub.subscription_state} (фактически {sub.effective_state()})",
        f"Пробный период использован: {'да' if sub.trial_consumed else 'нет'}",
        f"Ключ: {key.client_id} / {key.email} / inbound {key.inbound_id} до {_fmt_ts(key.expires_at)}"
        if key
        else "Ключ: -",
        f"Последний платёж: {sub.last_payment_id or '-'} ({sub.last_payment_state or '-'})",
    ]
    history = await get_payment_history(sub.user_id)
    for tx, amount, state, recorded_at in history:
        lines.append(f"  {_fmt_ts(recorded_at)} | {tx} | {amount} | {state}")
    await message.answer("\n".join(lines))


__all__ = ["ADMIN_IDS", "admin_router", "router"]
