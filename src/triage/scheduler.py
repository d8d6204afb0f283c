"""Deferred re-invocation registry for the batch engine.

Pending triggers live in the property store so a separate ``triage watch``
process can fire them. Scheduling always removes earlier triggers for the
same handler first, so at most one re-invocation is ever pending.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

from triage.store import PropertyStore

PENDING_TRIGGERS_PROPERTY = "pending_triggers"
ENGINE_HANDLER = "run_chunk"


@dataclass(frozen=True)
class PendingTrigger:
    """One-shot future invocation registered for a handler."""

    trigger_id: str
    handler: str
    due_at: float

    @property
    def due_at_iso(self) -> str:
        return datetime.fromtimestamp(self.due_at).isoformat()


class TriggerScheduler:
    """Register, list, and cancel deferred invocations of one handler.

    Parameters
    ----------
    properties:
        Property store holding the trigger registry.
    handler:
        Identity of the invocation target; only triggers with this handler
        are listed, replaced, or cancelled.
    clock:
        Wall-clock source returning epoch seconds.
    """

    def __init__(
        self,
        properties: PropertyStore,
        *,
        handler: str = ENGINE_HANDLER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.properties = properties
        self.handler = handler
        self.clock = clock

    def _decode(self, raw: Optional[object]) -> List[PendingTrigger]:
        triggers: List[PendingTrigger] = []
        if not isinstance(raw, list):
            return triggers
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                triggers.append(
                    PendingTrigger(
                        trigger_id=str(item["trigger_id"]),
                        handler=str(item["handler"]),
                        due_at=float(item["due_at"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logging.warning("Dropping malformed pending trigger: %r", item)
        return triggers

    def _rewrite(
        self, change: Callable[[List[PendingTrigger]], List[PendingTrigger]]
    ) -> None:
        """Apply ``change`` to the registry in one locked read-modify-write."""

        def _apply(raw: Optional[object]) -> Optional[object]:
            triggers = change(self._decode(raw))
            return [asdict(trigger) for trigger in triggers] or None

        self.properties.update(PENDING_TRIGGERS_PROPERTY, _apply)

    def pending(self) -> List[PendingTrigger]:
        """Return triggers registered for this handler, earliest first."""

        raw = self.properties.get(PENDING_TRIGGERS_PROPERTY)
        mine = [t for t in self._decode(raw) if t.handler == self.handler]
        return sorted(mine, key=lambda trigger: trigger.due_at)

    def cancel_all(self) -> int:
        """Remove every trigger for this handler and return how many were removed."""

        removed: List[PendingTrigger] = []

        def _drop_mine(triggers: List[PendingTrigger]) -> List[PendingTrigger]:
            removed.extend(t for t in triggers if t.handler == self.handler)
            return [t for t in triggers if t.handler != self.handler]

        self._rewrite(_drop_mine)
        return len(removed)

    def schedule_once(self, delay_seconds: float) -> PendingTrigger:
        """Replace any pending trigger with one due ``delay_seconds`` from now."""

        trigger = PendingTrigger(
            trigger_id=uuid.uuid4().hex,
            handler=self.handler,
            due_at=self.clock() + max(0.0, float(delay_seconds)),
        )
        self._rewrite(
            lambda triggers: [t for t in triggers if t.handler != self.handler]
            + [trigger]
        )
        logging.info(
            "Scheduled next chunk for %s (trigger %s)",
            trigger.due_at_iso,
            trigger.trigger_id,
        )
        return trigger

    def pop_due(self) -> Optional[PendingTrigger]:
        """Remove and return this handler's trigger if it is due, else ``None``."""

        now = self.clock()
        fired: List[PendingTrigger] = []

        def _take_due(triggers: List[PendingTrigger]) -> List[PendingTrigger]:
            due = sorted(
                (t for t in triggers if t.handler == self.handler and t.due_at <= now),
                key=lambda trigger: trigger.due_at,
            )
            if not due:
                return triggers
            fired.append(due[0])
            return [t for t in triggers if t.trigger_id != due[0].trigger_id]

        if not any(t.due_at <= now for t in self.pending()):
            return None
        self._rewrite(_take_due)
        return fired[0] if fired else None
