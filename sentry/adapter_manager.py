"""In-memory registry of adapters, services and channels.

The manager owns no device state. It routes batched fetch/send requests to
the adapter that registered each channel and reports one OpResult per
requested channel id.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from sentry.values import OP_FETCH, OP_SEND, OperationNotSupported, OpResult


class RegistrationError(Exception):
    """Raised when an adapter, service or channel cannot be registered."""


@dataclass(frozen=True)
class Service:
    id: str
    adapter: str
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Channel:
    id: str
    adapter: str
    service: str
    feature: str
    supports_fetch: Optional[str] = None
    supports_send: Optional[str] = None
    tags: tuple[str, ...] = field(default=())

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "adapter": self.adapter,
            "service": self.service,
            "feature": self.feature,
            "supports_fetch": self.supports_fetch,
            "supports_send": self.supports_send,
            "tags": list(self.tags),
        }


class AdapterManager:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._lock = threading.Lock()
        self._adapters: dict[str, Any] = {}
        self._services: dict[str, Service] = {}
        self._channels: dict[str, Channel] = {}
        self._log = logger or logging.getLogger("adapter_manager")

    # --- Registration ---
    def add_adapter(self, adapter: Any) -> None:
        with self._lock:
            if adapter.id in self._adapters:
                raise RegistrationError(f"adapter already registered: {adapter.id}")
            self._adapters[adapter.id] = adapter
        self._log.info("Registered adapter %s (%s)", adapter.id, adapter.name)

    def add_service(self, service: Service) -> None:
        with self._lock:
            if service.adapter not in self._adapters:
                raise RegistrationError(f"unknown adapter {service.adapter} for service {service.id}")
            if service.id in self._services:
                raise RegistrationError(f"service already registered: {service.id}")
            self._services[service.id] = service

    def add_channel(self, channel: Channel) -> None:
        with self._lock:
            service = self._services.get(channel.service)
            if service is None:
                raise RegistrationError(f"unknown service {channel.service} for channel {channel.id}")
            if service.adapter != channel.adapter:
                raise RegistrationError(f"channel {channel.id} and service {service.id} belong to different adapters")
            if channel.id in self._channels:
                raise RegistrationError(f"channel already registered: {channel.id}")
            self._channels[channel.id] = channel

    def remove_adapter(self, adapter_id: str) -> None:
        with self._lock:
            if self._adapters.pop(adapter_id, None) is None:
                raise RegistrationError(f"unknown adapter: {adapter_id}")
            self._services = {k: v for k, v in self._services.items() if v.adapter != adapter_id}
            self._channels = {k: v for k, v in self._channels.items() if v.adapter != adapter_id}

    # --- Introspection ---
    def adapters(self) -> list[Any]:
        with self._lock:
            return list(self._adapters.values())

    def channels(self) -> list[Channel]:
        with self._lock:
            return sorted(self._channels.values(), key=lambda channel: channel.id)

    def status(self) -> dict[str, Any]:
        return {adapter.id: adapter.status() for adapter in self.adapters()}

    # --- Dispatch ---
    def _route(self, ids: Iterable[str], operation: str) -> tuple[dict[str, list[str]], dict[str, OpResult]]:
        routed: dict[str, list[str]] = {}
        rejected: dict[str, OpResult] = {}
        with self._lock:
            for channel_id in ids:
                channel = self._channels.get(channel_id)
                supported = channel is not None and (
                    channel.supports_fetch if operation == OP_FETCH else channel.supports_send
                )
                if not supported:
                    rejected[channel_id] = OpResult(error=OperationNotSupported(operation, channel_id))
                    continue
                routed.setdefault(channel.adapter, []).append(channel_id)
        return routed, rejected

    def fetch_values(self, ids: Iterable[str]) -> dict[str, OpResult]:
        requested = list(dict.fromkeys(ids))
        routed, results = self._route(requested, OP_FETCH)
        for adapter_id, channel_ids in routed.items():
            results.update(self._adapters[adapter_id].fetch_many(channel_ids))
        return {channel_id: results[channel_id] for channel_id in requested}

    def send_values(self, assignments: Mapping[str, Any]) -> dict[str, OpResult]:
        routed, results = self._route(assignments.keys(), OP_SEND)
        for adapter_id, channel_ids in routed.items():
            batch = {channel_id: assignments[channel_id] for channel_id in channel_ids}
            results.update(self._adapters[adapter_id].send_many(batch))
        return {channel_id: results[channel_id] for channel_id in assignments}

    def shutdown(self) -> None:
        for adapter in self.adapters():
            adapter.shutdown()
