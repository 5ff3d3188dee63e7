import os
import time
from dataclasses import dataclass, field

import aiosqlite

DB_PATH = os.getenv("DB_PATH", "vpn.sqlite")

STATE_NONE = "none"
STATE_TRIAL = "trial"
STATE_PREMIUM = "premium"


@dataclass
class ActiveKey:
    client_id: str
    email: str
    inbound_id: int
    expires_at: int


@dataclass
class Subscriber:
    user_id: str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    subscription_state: str = STATE_NONE
    trial_consumed: bool = False
    active_key: ActiveKey | None = None
    last_payment_id: str | None = None
    last_payment_state: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time()))

    def has_access(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.active_key is not None and self.active_key.expires_at > now

    def effective_state(self, now: float | None = None) -> str:
        """Subscription state derived from the key, not the cached column."""
        if not self.has_access(now):
            return STATE_NONE
        return self.subscription_state


@dataclass
class PaymentIntent:
    transaction_id: str
    external_id: str
    user_id: str
    amount: float
    currency: str
    subscription_months: int
    state: str = "pending"
    payment_url: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    completed_at: int | None = None


def get_connection():
    dirpath = os.path.dirname(DB_PATH)
    if dirpath:
        os.makedirs(dirpath, exist_ok=True)
    return aiosqlite.connect(DB_PATH)


async def init_db() -> None:
    async with get_connection() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS subscribers (
                user_id TEXT PRIMARY KEY,
                username TEXT,
                first_name TEXT,
                last_name TEXT,
                subscription_state TEXT NOT NULL DEFAULT 'none',
                trial_consumed INTEGER NOT NULL DEFAULT 0,
                key_client_id TEXT,
                key_email TEXT,
                key_inbound_id INTEGER,
                key_expires_at INTEGER,
                last_payment_id TEXT,
                last_payment_state TEXT,
                created_at INTEGER
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                transaction_id TEXT PRIMARY KEY,
                external_id TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                amount REAL,
                currency TEXT,
                subscription_months INTEGER,
                state TEXT NOT NULL,
                payment_url TEXT,
                created_at INTEGER,
                completed_at INTEGER
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS payment_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                transaction_id TEXT,
                amount REAL,
                state TEXT,
                recorded_at INTEGER
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                transaction_id TEXT,
                reason TEXT,
                created_at INTEGER,
                resolved INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                user_id TEXT PRIMARY KEY,
                last_notified_at INTEGER
            )
            """
        )
        await conn.commit()


_SUBSCRIBER_COLUMNS = (
    "user_id, username, first_name, last_name, subscription_state, trial_consumed, "
    "key_client_id, key_email, key_inbound_id, key_expires_at, "
    "last_payment_id, last_payment_state, created_at"
)

_PAYMENT_COLUMNS = (
    "transaction_id, external_id, user_id, amount, currency, subscription_months, "
    "state, payment_url, created_at, completed_at"
)


def _subscriber_from_row(row) -> Subscriber:
    (
        user_id, username, first_name, last_name, state, trial_consumed,
        client_id, email, inbound_id, expires_at,
        last_payment_id, last_payment_state, created_at,
    ) = row
    key = None
    if client_id is not None:
        key = ActiveKey(client_id, email, inbound_id, expires_at)
    return Subscriber(
        user_id=user_id,
        username=username,
        first_name=first_name,
        last_name=last_name,
        subscription_state=state,
        trial_consumed=bool(trial_consumed),
        active_key=key,
        last_payment_id=last_payment_id,
        last_payment_state=last_payment_state,
        created_at=created_at,
    )


def _payment_from_row(row) -> PaymentIntent:
    return PaymentIntent(*row)


async def get_subscriber(user_id: str) -> Subscriber | None:
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"SELECT {_SUBSCRIBER_COLUMNS} FROM subscribers WHERE user_id=?",
            (str(user_id),),
        )
        row = await cursor.fetchone()
    return _subscriber_from_row(row) if row else None


async def save_subscriber(sub: Subscriber) -> None:
    """Write the whole record. ``trial_consumed`` can never be reset."""
    key = sub.active_key
    async with get_connection() as conn:
        await conn.execute(
            f"INSERT INTO subscribers ({_SUBSCRIBER_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET "
            "username=excluded.username, first_name=excluded.first_name, "
            "last_name=excluded.last_name, subscription_state=excluded.subscription_state, "
            "trial_consumed=MAX(subscribers.trial_consumed, excluded.trial_consumed), "
            "key_client_id=excluded.key_client_id, key_email=excluded.key_email, "
            "key_inbound_id=excluded.key_inbound_id, key_expires_at=excluded.key_expires_at, "
            "last_payment_id=excluded.last_payment_id, "
            "last_payment_state=excluded.last_payment_state",
            (
                str(sub.user_id),
                sub.username,
                sub.first_name,
                sub.last_name,
                sub.subscription_state,
                int(sub.trial_consumed),
                key.client_id if key else None,
                key.email if key else None,
                key.inbound_id if key else None,
                key.expires_at if key else None,
                sub.last_payment_id,
                sub.last_payment_state,
                sub.created_at,
            ),
        )
        await conn.commit()


async def ensure_subscriber(
    user_id: str,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> Subscriber:
    """Return the subscriber, creating it on first interaction."""
    sub = await get_subscriber(user_id)
    if sub is None:
        sub = Subscriber(str(user_id), username, first_name, last_name)
        await save_subscriber(sub)
        return sub
    changed = False
    for attr, value in (
        ("username", username),
        ("first_name", first_name),
        ("last_name", last_name),
    ):
        if value and getattr(sub, attr) != value:
            setattr(sub, attr, value)
            changed = True
    if changed:
        await save_subscriber(sub)
    return sub


async def list_keyed_subscribers() -> list[Subscriber]:
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"SELECT {_SUBSCRIBER_COLUMNS} FROM subscribers "
            "WHERE key_client_id IS NOT NULL AND key_expires_at IS NOT NULL"
        )
        rows = await cursor.fetchall()
    return [_subscriber_from_row(row) for row in rows]


async def append_payment_record(
    user_id: str,
    transaction_id: str,
    amount: float | None,
    state: str,
    recorded_at: int | None = None,
) -> None:
    async with get_connection() as conn:
        await conn.execute(
            "INSERT INTO payment_history (user_id, transaction_id, amount, state, recorded_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (
                str(user_id),
                transaction_id,
                amount,
                state,
                int(time.time()) if recorded_at is None else recorded_at,
            ),
        )
        await conn.commit()


async def get_payment_history(user_id: str) -> list[tuple]:
    """Return ``(transaction_id, amount, state, recorded_at)`` rows, oldest first."""
    async with get_connection() as conn:
        cursor = await conn.execute(
            "SELECT transaction_id, amount, state, recorded_at FROM payment_history "
            "WHERE user_id=? ORDER BY id",
            (str(user_id),),
        )
        return await cursor.fetchall()


async def add_payment(intent: PaymentIntent) -> None:
    async with get_connection() as conn:
        await conn.execute(
            f"INSERT INTO payments ({_PAYMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                intent.transaction_id,
                intent.external_id,
                str(intent.user_id),
                intent.amount,
                intent.currency,
                intent.subscription_months,
                intent.state,
                intent.payment_url,
                intent.created_at,
                intent.completed_at,
            ),
        )
        await conn.commit()


async def get_payment(transaction_id: str) -> PaymentIntent | None:
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE transaction_id=?",
            (transaction_id,),
        )
        row = await cursor.fetchone()
    return _payment_from_row(row) if row else None


async def update_payment_state(
    transaction_id: str,
    expected: str,
    state: str,
    completed_at: int | None = None,
) -> bool:
    """Move a payment from ``expected`` to ``state``.

    Return ``False`` when the stored state is no longer ``expected``.
    """
    async with get_connection() as conn:
        cursor = await conn.execute(
            "UPDATE payments SET state=?, completed_at=? WHERE transaction_id=? AND state=?",
            (state, completed_at, transaction_id, expected),
        )
        await conn.commit()
        return cursor.rowcount == 1


async def record_alert(user_id: str, transaction_id: str | None, reason: str) -> int:
    async with get_connection() as conn:
        cursor = await conn.execute(
            "INSERT INTO alerts (user_id, transaction_id, reason, created_at) VALUES (?, ?, ?, ?)",
            (str(user_id), transaction_id, reason, int(time.time())),
        )
        await conn.commit()
        return cursor.lastrowid


async def list_alerts(include_resolved: bool = False) -> list[tuple]:
    """Return ``(id, user_id, transaction_id, reason, created_at)`` rows."""
    query = "SELECT id, user_id, transaction_id, reason, created_at FROM alerts"
    if not include_resolved:
        query += " WHERE resolved=0"
    async with get_connection() as conn:
        cursor = await conn.execute(query + " ORDER BY id")
        return await cursor.fetchall()


async def resolve_alert(alert_id: int) -> bool:
    async with get_connection() as conn:
        cursor = await conn.execute(
            "UPDATE alerts SET resolved=1 WHERE id=? AND resolved=0", (alert_id,)
        )
        await conn.commit()
        return cursor.rowcount == 1


async def get_last_notification(user_id: str) -> int | None:
    async with get_connection() as conn:
        cursor = await conn.execute(
            "SELECT last_notified_at FROM notifications WHERE user_id=?",
            (str(user_id),),
        )
        row = await cursor.fetchone()
        if row:
            return row[0]
        return None


async def set_last_notification(user_id: str, ts: int) -> None:
    async with get_connection() as conn:
        await conn.execute(
            "INSERT OR REPLACE INTO notifications (user_id, last_notified_at) VALUES (?, ?)",
            (str(user_id), ts),
        )
        await conn.commit()
