"""Decides which components Top SQL scrapes and records their liveness."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from topsql.models import InstanceItem

logger = logging.getLogger(__name__)

COMPONENT_TIDB = "tidb"
COMPONENT_TIKV = "tikv"
COMPONENT_PD = "pd"
COMPONENT_TIFLASH = "tiflash"


@dataclass(frozen=True)
class Component:
    """A cluster component as reported by the topology."""

    name: str
    ip: str = ""
    port: int = 0
    status_port: int = 0


class SubscriberController:
    """Holds the Top SQL switch and the current topology."""

    def __init__(self, store: Any) -> None:
        self._store = store
        self._enabled = False
        self._components: list[Component] = []

    def name(self) -> str:
        return "Top SQL"

    def is_enabled(self) -> bool:
        return self._enabled

    def update_pd_variable(self, enable_top_sql: bool) -> None:
        self._enabled = enable_top_sql

    def update_topology(self, components: Iterable[Component]) -> None:
        self._components = list(components)
        if self._enabled:
            try:
                self.store_topology()
            except Exception:
                logger.warning("failed to store topology", exc_info=True)

    def store_topology(self, now: int | None = None) -> None:
        """Record every TiDB and TiKV instance of the topology as alive now."""
        if not self._components:
            return
        if now is None:
            now = int(time.time())
        items = []
        for com in self._components:
            if com.name == COMPONENT_TIDB:
                items.append(InstanceItem(f"{com.ip}:{com.status_port}", COMPONENT_TIDB, now))
            elif com.name == COMPONENT_TIKV:
                items.append(InstanceItem(f"{com.ip}:{com.port}", COMPONENT_TIKV, now))
        self._store.instances(items)