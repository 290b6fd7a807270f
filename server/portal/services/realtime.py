from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

ChangeKind = Literal["insert", "update", "delete"]

_PENDING_KEY = "portal_pending_changes"
_WATCHED_KEYS = ("role", "name")


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: ChangeKind
    record_id: Any
    keys: Mapping[str, Any] = field(default_factory=dict)


ChangeHandler = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    channel_key: str
    table: str
    on_change: ChangeHandler
    filter: Mapping[str, Any] | None = None

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if not self.filter:
            return True
        return all(change.keys.get(key) == value for key, value in self.filter.items())


class RealtimeHub:
    """In-process change channel keyed by logical channel name.

    Subscribing twice under the same key keeps the first subscription.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, Subscription] = {}

    def subscribe(
        self,
        channel_key: str,
        table: str,
        on_change: ChangeHandler,
        filter: Mapping[str, Any] | None = None,
    ) -> Subscription:
        with self._lock:
            existing = self._channels.get(channel_key)
            if existing is not None:
                logger.debug("realtime_already_subscribed", extra={"channel": channel_key})
                return existing
            subscription = Subscription(channel_key=channel_key, table=table, on_change=on_change, filter=filter)
            self._channels[channel_key] = subscription
        logger.info("realtime_subscribed", extra={"channel": channel_key, "table": table})
        return subscription

    def unsubscribe(self, channel_key: str) -> bool:
        with self._lock:
            removed = self._channels.pop(channel_key, None)
        if removed is not None:
            logger.info("realtime_unsubscribed", extra={"channel": channel_key})
        return removed is not None

    def is_subscribed(self, channel_key: str) -> bool:
        return channel_key in self._channels

    def active_channels(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [sub for sub in self._channels.values() if sub.matches(change)]
        for subscription in targets:
            try:
                subscription.on_change(change)
            except Exception:
                logger.exception(
                    "realtime_handler_failed",
                    extra={"channel": subscription.channel_key, "table": change.table, "kind": change.kind},
                )


def _describe(instance: Any, kind: ChangeKind) -> ChangeEvent | None:
    table = getattr(instance, "__tablename__", None)
    if table is None:
        return None
    identity = inspect(instance).identity
    record_id = identity[0] if identity else getattr(instance, "id", None)
    keys = {key: getattr(instance, key) for key in _WATCHED_KEYS if hasattr(instance, key)}
    return ChangeEvent(table=table, kind=kind, record_id=record_id, keys=keys)


def capture_changes(session_factory: sessionmaker, hub: RealtimeHub) -> None:
    """Publish ORM changes to ``hub`` once the owning transaction commits."""

    if session_factory.kw.get("info", {}).get("portal_realtime_hub") is hub:
        return
    session_factory.kw.setdefault("info", {})["portal_realtime_hub"] = hub

    def _after_flush(session: Session, flush_context) -> None:
        if session.info.get("portal_realtime_hub") is not hub:
            return
        pending = session.info.setdefault(_PENDING_KEY, [])
        for kind, instances in (("insert", session.new), ("update", session.dirty), ("delete", session.deleted)):
            for instance in instances:
                if kind == "update" and not session.is_modified(instance):
                    continue
                change = _describe(instance, kind)
                if change is not None:
                    pending.append(change)

    def _after_commit(session: Session) -> None:
        if session.info.get("portal_realtime_hub") is not hub:
            return
        for change in session.info.pop(_PENDING_KEY, []):
            hub.publish(change)

    def _after_soft_rollback(session: Session, previous_transaction) -> None:
        session.info.pop(_PENDING_KEY, None)

    event.listen(session_factory, "after_flush", _after_flush)
    event.listen(session_factory, "after_commit", _after_commit)
    event.listen(session_factory, "after_soft_rollback", _after_soft_rollback)
