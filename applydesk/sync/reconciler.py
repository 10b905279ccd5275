"""Applies live-channel events to the in-memory set of pending interventions."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from ..models.intervention import EventEnvelope, EventType, Intervention
from .listeners import Listeners

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

SOURCE_LIVE = "live"
SOURCE_POLL = "poll"

Envelope = Union[str, bytes, dict, EventEnvelope]


class EventReconciler:
    """Holds ``pending_count`` and the newest-first ``interventions`` list.

    Every mutation happens synchronously inside ``apply``/``replace``/
    ``remove``. The count only moves together with the list, so it always
    matches the set as last reconciled (a snapshot may carry a larger
    backend-side count than the list it ships, which is kept as-is).
    """

    def __init__(self):
        self._interventions: list[Intervention] = []
        self._pending_count = 0
        self._revisions = {SOURCE_LIVE: 0, SOURCE_POLL: 0}

        self._intervention_listeners = Listeners("intervention")
        self._resolved_listeners = Listeners("resolved")
        self._change_listeners = Listeners("change")
        self._event_listeners = Listeners("event")

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return self._pending_count

    @property
    def interventions(self) -> list[Intervention]:
        return list(self._interventions)

    def get(self, intervention_id: str) -> Optional[Intervention]:
        for intervention in self._interventions:
            if intervention.id == intervention_id:
                return intervention
        return None

    def revision(self, source: str) -> int:
        """How many times ``source`` has changed the state."""
        return self._revisions[source]

    # ── Observers ────────────────────────────────────────────────────────────

    def add_intervention_listener(
        self, callback: Callable[[Intervention], None]
    ) -> Callable[[], None]:
        return self._intervention_listeners.add(callback)

    def add_resolved_listener(self, callback: Callable[[str, str], None]) -> Callable[[], None]:
        return self._resolved_listeners.add(callback)

    def add_change_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._change_listeners.add(callback)

    def add_event_listener(self, callback: Callable[[EventEnvelope], None]) -> Callable[[], None]:
        """Every well-formed envelope, after it has been applied."""
        return self._event_listeners.add(callback)

    # ── Mutations ────────────────────────────────────────────────────────────

    def apply(self, envelope: Envelope) -> None:
        """Apply one live-channel event. Malformed events are dropped."""
        event = self._parse(envelope)
        if event is None:
            return

        kind = event.type
        payload = event.payload

        if kind in (EventType.INITIAL_STATE, EventType.REFRESH):
            try:
                items = [Intervention.model_validate(i) for i in payload.get("interventions") or []]
            except (ValidationError, TypeError) as e:
                logger.debug(f"Dropping malformed {kind} snapshot: {e}")
                return
            self._replace(items, payload.get("pending_count"), SOURCE_LIVE)

        elif kind == EventType.INTERVENTION:
            try:
                intervention = Intervention.from_event(payload)
            except (KeyError, ValidationError) as e:
                logger.debug(f"Dropping malformed intervention event: {e}")
                return
            self._add(intervention)

        elif kind == EventType.INTERVENTION_RESOLVED:
            intervention_id = payload.get("intervention_id")
            if not intervention_id:
                logger.debug("Dropping intervention_resolved event without an id")
                return
            self._remove(str(intervention_id), str(payload.get("action", "")), SOURCE_LIVE)

        # pong, session-channel kinds and anything unknown leave state alone

        self._event_listeners.notify(event)

    def replace(
        self,
        interventions: list[Intervention],
        pending_count: Optional[int] = None,
        source: str = SOURCE_POLL,
    ) -> None:
        """Overwrite state with an authoritative snapshot."""
        self._replace(list(interventions), pending_count, source)

    def remove(self, intervention_id: str, action: str = "") -> bool:
        """Drop an intervention after a successful resolve command.

        Same path as an ``intervention_resolved`` event, so the command
        response and the event converge whichever lands first.
        """
        return self._remove(intervention_id, action, SOURCE_LIVE)

    # ── Internals ────────────────────────────────────────────────────────────

    @staticmethod
    def _parse(envelope: Envelope) -> Optional[EventEnvelope]:
        if isinstance(envelope, EventEnvelope):
            return envelope
        try:
            data: Any = envelope
            if isinstance(envelope, (str, bytes)):
                data = json.loads(envelope)
            return EventEnvelope.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.debug(f"Dropping malformed payload: {e}")
            return None

    def _replace(self, items: list[Intervention], pending_count: Any, source: str):
        self._interventions = items
        try:
            count = int(pending_count) if pending_count is not None else len(items)
        except (TypeError, ValueError):
            count = len(items)
        self._pending_count = max(0, count)
        self._bump(source)

    def _add(self, intervention: Intervention):
        existing = self.get(intervention.id)
        if existing is not None:
            # redelivered event: refresh the entry, do not count it twice
            self._interventions = [intervention] + [
                i for i in self._interventions if i.id != intervention.id
            ]
            self._bump(SOURCE_LIVE)
            return

        self._interventions = [intervention] + self._interventions
        self._pending_count += 1
        self._bump(SOURCE_LIVE)
        logger.info(f"New intervention {intervention.id}: {intervention.title}")
        self._intervention_listeners.notify(intervention)

    def _remove(self, intervention_id: str, action: str, source: str) -> bool:
        remaining = [i for i in self._interventions if i.id != intervention_id]
        if len(remaining) == len(self._interventions):
            return False

        self._interventions = remaining
        self._pending_count = max(0, self._pending_count - 1)
        self._bump(source)
        logger.info(f"Intervention {intervention_id} resolved ({action or 'no action'})")
        self._resolved_listeners.notify(intervention_id, action)
        return True

    def _bump(self, source: str):
        self._revisions[source] += 1
        self._change_listeners.notify()
