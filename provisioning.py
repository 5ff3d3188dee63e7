"""Subscription lifecycle: trial grants, paid tiers and webhook confirmation.

Every read-modify-write of a subscriber happens while holding that
subscriber's lock, so a double-tapped trial button or a webhook racing a
menu action cannot produce two panel grants or lose a store update.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

import db
from db import PaymentIntent, Subscriber
from panel_api import PanelError
from payments import (
    FAILED,
    PENDING,
    SUCCESS,
    TERMINAL_STATES,
    SignatureError,
)

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60
DAYS_PER_MONTH = 30
TRIAL_DAYS = 3

PROCESSED = "processed"
REPLAYED = "replayed"
ACTIVATION_FAILED = "activation_failed"


@dataclass(frozen=True)
class Tier:
    key: str
    months: int
    price: int
    currency: str = "RUB"

    @property
    def title(self) -> str:
        return f"Portal VPN - {self.months} {month_word(self.months)}"


def month_word(months: int) -> str:
    if months % 10 == 1 and months % 100 != 11:
        return "месяц"
    if 2 <= months % 10 <= 4 and not 12 <= months % 100 <= 14:
        return "месяца"
    return "месяцев"


TIERS = {
    tier.key: tier
    for tier in (
        Tier("1_month", 1, 180),
        Tier("3_months", 3, 400),
        Tier("6_months", 6, 750),
        Tier("1_year", 12, 900),
    )
}


class TrialAlreadyUsed(Exception):
    def __init__(self, subscriber: Subscriber):
        super().__init__(f"trial already used by {subscriber.user_id}")
        self.subscriber = subscriber


class PremiumActive(Exception):
    def __init__(self, subscriber: Subscriber):
        super().__init__(f"premium key already active for {subscriber.user_id}")
        self.subscriber = subscriber


class UnknownTier(KeyError):
    pass


class PaymentNotFound(LookupError):
    pass


class SubscriberNotFound(LookupError):
    pass


def premium_expiry(start: float, months: int) -> int:
    """Fixed 30-day months, not calendar months."""
    return int(start) + months * DAYS_PER_MONTH * DAY


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key):
        key = str(key)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class Provisioner:
    def __init__(
        self,
        panel,
        gateway,
        notifier,
        trial_inbound_id: int,
        premium_inbound_id: int,
        trial_days: int = TRIAL_DAYS,
        clock=time.time,
    ) -> None:
        self.panel = panel
        self.gateway = gateway
        self.notifier = notifier
        self.trial_inbound_id = trial_inbound_id
        self.premium_inbound_id = premium_inbound_id
        self.trial_days = trial_days
        self.clock = clock
        self.locks = KeyedLock()

    async def register(self, user_id, username=None, first_name=None, last_name=None) -> Subscriber:
        async with self.locks.hold(user_id):
            return await db.ensure_subscriber(str(user_id), username, first_name, last_name)

    async def request_trial(
        self, user_id, username=None, first_name=None, last_name=None
    ) -> Subscriber:
        """Grant the one-shot trial key.

        Raises :class:`TrialAlreadyUsed`, :class:`PremiumActive` or
        :class:`PanelError`; nothing is stored unless the panel accepted the
        client.
        """
        user_id = str(user_id)
        async with self.locks.hold(user_id):
            sub = await db.ensure_subscriber(user_id, username, first_name, last_name)
            now = int(self.clock())
            if sub.trial_consumed:
                raise TrialAlreadyUsed(sub)
            if sub.effective_state(now) == db.STATE_PREMIUM:
                raise PremiumActive(sub)
            client_id = str(uuid.uuid4())
            email = f"trial_{user_id}"
            expires_at = now + self.trial_days * DAY
            await self.panel.grant_client(client_id, email, self.trial_inbound_id, expires_at)
            sub.trial_consumed = True
            sub.subscription_state = db.STATE_TRIAL
            sub.active_key = db.ActiveKey(client_id, email, self.trial_inbound_id, expires_at)
            await db.save_subscriber(sub)
        logger.info("Trial key %s granted to user %s", client_id, user_id)
        return sub

    async def select_tier(
        self,
        user_id,
        tier: Tier | str,
        username=None,
        first_name=None,
        last_name=None,
        return_url: str | None = None,
        fail_url: str | None = None,
    ) -> PaymentIntent:
        """Create a payment for ``tier`` and store it as pending.

        The intent is persisted before it is returned so that a webhook
        arriving right after checkout always finds it.
        """
        if isinstance(tier, str):
            try:
                tier = TIERS[tier]
            except KeyError:
                raise UnknownTier(tier) from None
        user_id = str(user_id)
        async with self.locks.hold(user_id):
            sub = await db.ensure_subscriber(user_id, username, first_name, last_name)
            link = await self.gateway.create_payment(
                tier.price, tier.title, user_id, return_url, fail_url
            )
            intent = PaymentIntent(
                transaction_id=link.transaction_id,
                external_id=link.external_id,
                user_id=user_id,
                amount=tier.price,
                currency=tier.currency,
                subscription_months=tier.months,
                state=PENDING,
                payment_url=link.payment_url,
                created_at=int(self.clock()),
            )
            await db.add_payment(intent)
            sub.last_payment_id = intent.transaction_id
            sub.last_payment_state = PENDING
            await db.save_subscriber(sub)
        return intent

    async def check_payment(self, user_id, transaction_id: str) -> str:
        """Poll the gateway for one of the user's own payments."""
        intent = await db.get_payment(transaction_id)
        if intent is None or intent.user_id != str(user_id):
            raise PaymentNotFound(transaction_id)
        return await self.gateway.check_status(transaction_id)

    async def handle_webhook(self, raw: bytes, signature: str | None) -> str:
        if not self.gateway.verify_signature(raw, signature):
            raise SignatureError("invalid webhook signature")
        event = self.gateway.decode_webhook(raw)
        logger.info(
            "Webhook for transaction %s: state=%s user=%s",
            event.transaction_id,
            event.state,
            event.subscriber_id,
        )

        intent = await db.get_payment(event.transaction_id)
        if intent is None and event.subscriber_id:
            # checkout for this user may still be storing the intent
            async with self.locks.hold(event.subscriber_id):
                pass
            intent = await db.get_payment(event.transaction_id)
        if intent is None:
            raise PaymentNotFound(event.transaction_id)

        async with self.locks.hold(intent.user_id):
            intent = await db.get_payment(event.transaction_id)
            if intent.state in TERMINAL_STATES or intent.state == event.state:
                logger.info(
                    "Transaction %s already %s, ignoring %s",
                    intent.transaction_id,
                    intent.state,
                    event.state,
                )
                return REPLAYED
            sub = await db.get_subscriber(intent.user_id)
            if sub is None:
                raise SubscriberNotFound(intent.user_id)
            return await self._apply(intent, sub, event.state)

    async def _apply(self, intent: PaymentIntent, sub: Subscriber, state: str) -> str:
        now = int(self.clock())
        completed_at = now if state == SUCCESS else None
        if not await db.update_payment_state(
            intent.transaction_id, intent.state, state, completed_at
        ):
            return REPLAYED
        intent.state = state
        intent.completed_at = completed_at
        try:
            return await self._complete(intent, sub, state, now)
        except Exception as exc:
            # the new state is committed, so a redelivery will be ignored
            logger.exception(
                "Transaction %s for user %s stored as %s but processing failed",
                intent.transaction_id,
                sub.user_id,
                state,
            )
            reason = f"payment {state} recorded but processing failed: {exc!r}"
            alert_id = await db.record_alert(sub.user_id, intent.transaction_id, reason)
            await self.notifier.operator_alert(alert_id, sub.user_id, intent, reason)
            raise

    async def _complete(self, intent: PaymentIntent, sub: Subscriber, state: str, now: int) -> str:
        await db.append_payment_record(
            sub.user_id, intent.transaction_id, intent.amount, state, now
        )
        sub.last_payment_id = intent.transaction_id
        sub.last_payment_state = state

        if state == SUCCESS:
            return await self._grant_premium(intent, sub, now)
        await db.save_subscriber(sub)
        if state == FAILED:
            logger.info("Payment %s failed for user %s", intent.transaction_id, sub.user_id)
            await self.notifier.payment_failed(sub.user_id, intent)
        return PROCESSED

    async def _grant_premium(self, intent: PaymentIntent, sub: Subscriber, now: int) -> str:
        expires_at = premium_expiry(now, intent.subscription_months)
        client_id = str(uuid.uuid4())
        email = f"premium_{sub.user_id}_{now * 1000}"
        try:
            await self.panel.grant_client(client_id, email, self.premium_inbound_id, expires_at)
        except PanelError as exc:
            # money is captured; the key stays as it was until an operator steps in
            await db.save_subscriber(sub)
            reason = f"payment captured but key grant failed: {exc}"
            logger.error(
                "Activation failed for user %s, transaction %s: %s",
                sub.user_id,
                intent.transaction_id,
                exc,
            )
            alert_id = await db.record_alert(sub.user_id, intent.transaction_id, reason)
            await self.notifier.operator_alert(alert_id, sub.user_id, intent, reason)
            await self.notifier.activation_failed(sub.user_id, intent)
            return ACTIVATION_FAILED

        sub.subscription_state = db.STATE_PREMIUM
        sub.active_key = db.ActiveKey(client_id, email, self.premium_inbound_id, expires_at)
        await db.save_subscriber(sub)
        logger.info(
            "Premium key %s granted to user %s until %s",
            client_id,
            sub.user_id,
            expires_at,
        )
        await self.notifier.key_granted(sub, intent)
        return PROCESSED
