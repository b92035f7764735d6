"""Completion events: a plain publish/subscribe channel fed by the orchestrator.

Subscribers are resolved once per process from ``Settings.completion_subscribers`` and are
invoked with the full :class:`AssetSnapshot` each time an asset enters a terminal status.
"""

from __future__ import annotations

import importlib
import inspect
from typing import Any, Callable, Iterable, List, Sequence

from mediaflow.core.config import Settings
from mediaflow.core.logging import get_logger
from mediaflow.schemas import AssetSnapshot

Subscriber = Callable[[AssetSnapshot], Any]


class CompletionNotifier:
    def __init__(self, subscribers: Iterable[Subscriber] = ()):
        self._subscribers: List[Subscriber] = list(subscribers)
        self.logger = get_logger(component="completion_notifier")

    @property
    def subscribers(self) -> tuple[Subscriber, ...]:
        return tuple(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers.append(subscriber)
        return subscriber

    async def publish(self, snapshot: AssetSnapshot) -> int:
        """Deliver ``snapshot`` to every subscriber; returns how many accepted it."""
        delivered = 0
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(
                    "completion_subscriber_failed",
                    subscriber=_qualified_name(subscriber),
                    asset_id=snapshot.id,
                )
                continue
            delivered += 1
        return delivered


def log_completion(snapshot: AssetSnapshot) -> None:
    get_logger(component="completion_notifier").info(
        "asset_ready",
        asset_id=snapshot.id,
        owner_id=snapshot.owner_id,
        status=snapshot.status.value,
        cycle=snapshot.cycle,
        compressed_path=snapshot.compressed_path,
        thumbnail_path=snapshot.thumbnail_path,
        has_metadata=snapshot.metadata is not None,
        error_message=snapshot.error_message,
    )


def load_subscribers(paths: Sequence[str]) -> List[Subscriber]:
    """Import callables from ``module:attr`` (or ``module.attr``) paths."""
    subscribers: List[Subscriber] = []
    for path in paths:
        module_name, sep, attr = path.partition(":")
        if not sep:
            module_name, _, attr = path.rpartition(".")
        if not module_name or not attr:
            raise ValueError(f"invalid subscriber path: {path!r}")
        target = getattr(importlib.import_module(module_name), attr, None)
        if not callable(target):
            raise ValueError(f"subscriber is not callable: {path!r}")
        subscribers.append(target)
    return subscribers


def build_notifier(settings: Settings) -> CompletionNotifier:
    return CompletionNotifier(load_subscribers(settings.completion_subscribers))


def _qualified_name(subscriber: Subscriber) -> str:
    module = getattr(subscriber, "__module__", None) or "?"
    name = getattr(subscriber, "__qualname__", None) or type(subscriber).__name__
    return f"{module}:{name}"


__all__ = ["CompletionNotifier", "Subscriber", "build_notifier", "load_subscribers", "log_completion"]
