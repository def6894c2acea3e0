"""Trigger Manager: decides when a workflow instance starts."""

import calendar
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import (
    ScheduleFrequency,
    ScheduleSpec,
    TriggerDefinition,
    TriggerKind,
    WorkflowDefinition,
)
from .collaborators import EventBus
from .exceptions import NotFoundError, TriggerEvaluationError, WorkflowStateError
from .logging import get_logger, log_with_context
from .scheduling import Clock, TimerHandle

logger = get_logger(__name__)

Predicate = Callable[[], bool]
TriggerKey = Tuple[str, str]


def next_fire_time(spec: ScheduleSpec, now: datetime) -> datetime:
    """
    Next time a schedule fires, strictly after ``now``.

    Times are interpreted in UTC. Monthly schedules on a day the month does
    not have fire on the month's last day.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    at_time = now.replace(hour=spec.hour, minute=spec.minute, second=0, microsecond=0)

    if spec.frequency == ScheduleFrequency.DAILY:
        return at_time if at_time > now else at_time + timedelta(days=1)

    if spec.frequency == ScheduleFrequency.WEEKLY:
        weekday = spec.weekday if spec.weekday is not None else 0
        candidate = at_time + timedelta(days=(weekday - now.weekday()) % 7)
        return candidate if candidate > now else candidate + timedelta(days=7)

    day = spec.day_of_month or 1
    year, month = now.year, now.month
    while True:
        last_day = calendar.monthrange(year, month)[1]
        candidate = at_time.replace(year=year, month=month, day=min(day, last_day))
        if candidate > now:
            return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


@dataclass
class ArmedTrigger:
    """Registry entry for one trigger of one workflow."""
    flow_id: str
    trigger: TriggerDefinition
    enabled: bool = True
    consecutive_failures: int = 0
    fire_count: int = 0
    last_fired_at: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    last_value: bool = False
    disabled_reason: Optional[str] = None
    timer: Optional[TimerHandle] = None
    unsubscribe: Optional[Callable[[], None]] = None

    @property
    def key(self) -> TriggerKey:
        return (self.flow_id, self.trigger.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "trigger_id": self.trigger.id,
            "name": self.trigger.name,
            "kind": self.trigger.kind.value,
            "enabled": self.enabled,
            "consecutive_failures": self.consecutive_failures,
            "fire_count": self.fire_count,
            "last_fired_at": self.last_fired_at.isoformat() if self.last_fired_at else None,
            "next_fire_at": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "disabled_reason": self.disabled_reason,
        }


class TriggerManager:
    """
    Registry of armed triggers.

    Schedule and condition triggers run on Clock timers, event triggers on
    Event Bus subscriptions, manual triggers only through ``fire_manual``.
    Every fire starts an instance against the workflow's current stored
    version, which must be active.
    """

    def __init__(
        self,
        engine,
        clock: Clock,
        event_bus: EventBus,
        failure_threshold: int = 5,
        default_poll_interval: float = 60.0
    ):
        self.engine = engine
        self.clock = clock
        self.event_bus = event_bus
        self.failure_threshold = failure_threshold
        self.default_poll_interval = default_poll_interval

        self._registry: Dict[TriggerKey, ArmedTrigger] = {}
        self._predicates: Dict[str, Predicate] = {}
        self._lock = threading.RLock()

        logger.info(f"TriggerManager initialized with failure_threshold={failure_threshold}")

    def register_predicate(self, name: str, predicate: Predicate) -> None:
        """Make a named predicate available to condition triggers."""
        with self._lock:
            self._predicates[name] = predicate
        logger.debug(f"Registered trigger predicate: {name}")

    def unregister_predicate(self, name: str) -> bool:
        with self._lock:
            return self._predicates.pop(name, None) is not None

    def register_workflow(self, definition: WorkflowDefinition) -> List[str]:
        """
        Arm the enabled triggers of a definition, replacing any armed earlier for it.

        Returns:
            IDs of the triggers that were registered
        """
        with self._lock:
            self.unregister_workflow(definition.id)
            registered = []
            for trigger in definition.triggers:
                armed = ArmedTrigger(flow_id=definition.id, trigger=trigger, enabled=trigger.enabled)
                self._registry[armed.key] = armed
                if armed.enabled:
                    self._arm(armed)
                registered.append(trigger.id)

        logger.info(f"Registered {len(registered)} trigger(s) for workflow {definition.id}")
        return registered

    def unregister_workflow(self, flow_id: str) -> int:
        """Disarm and forget every trigger of a workflow."""
        with self._lock:
            keys = [key for key in self._registry if key[0] == flow_id]
            for key in keys:
                self._disarm(self._registry.pop(key))
        if keys:
            logger.info(f"Unregistered {len(keys)} trigger(s) for workflow {flow_id}")
        return len(keys)

    def enable_trigger(self, flow_id: str, trigger_id: str) -> None:
        """Re-enable a trigger, clearing its failure count."""
        with self._lock:
            armed = self._get(flow_id, trigger_id)
            if armed.enabled:
                return
            armed.enabled = True
            armed.consecutive_failures = 0
            armed.disabled_reason = None
            self._arm(armed)
        logger.info(f"Enabled trigger {trigger_id} of workflow {flow_id}")

    def disable_trigger(self, flow_id: str, trigger_id: str, reason: str = "disabled") -> None:
        with self._lock:
            armed = self._get(flow_id, trigger_id)
            armed.enabled = False
            armed.disabled_reason = reason
            self._disarm(armed)
        logger.info(f"Disabled trigger {trigger_id} of workflow {flow_id}: {reason}")

    def fire_manual(self, flow_id: str, trigger_id: Optional[str] = None,
                    context: Optional[Dict[str, Any]] = None) -> str:
        """
        Start an instance on request.

        Raises:
            NotFoundError: If the trigger or workflow does not exist
            WorkflowStateError: If the trigger is disabled or the workflow is not active
        """
        if trigger_id is not None:
            with self._lock:
                armed = self._get(flow_id, trigger_id)
                if not armed.enabled:
                    raise WorkflowStateError(f"Trigger {trigger_id} of workflow {flow_id} is disabled",
                                             current_status="disabled")
                armed.fire_count += 1
                armed.last_fired_at = self.clock.now()
        return self.engine.execute(flow_id, context or {}, trigger_id=trigger_id)

    def get_trigger_state(self, flow_id: str, trigger_id: str) -> Dict[str, Any]:
        with self._lock:
            return self._get(flow_id, trigger_id).to_dict()

    def list_triggers(self, flow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [armed.to_dict() for armed in self._registry.values() if flow_id is None or armed.flow_id == flow_id]

    def shutdown(self) -> None:
        with self._lock:
            for armed in self._registry.values():
                self._disarm(armed)
            self._registry.clear()
        logger.info("TriggerManager shutdown completed")

    def _get(self, flow_id: str, trigger_id: str) -> ArmedTrigger:
        armed = self._registry.get((flow_id, trigger_id))
        if armed is None:
            raise NotFoundError(
                f"Trigger {trigger_id} of workflow {flow_id} not found",
                resource="trigger",
                resource_id=trigger_id
            )
        return armed

    def _arm(self, armed: ArmedTrigger) -> None:
        trigger = armed.trigger
        key = armed.key
        if trigger.kind == TriggerKind.SCHEDULE:
            self._arm_schedule(armed)
        elif trigger.kind == TriggerKind.EVENT:
            armed.unsubscribe = self.event_bus.subscribe(
                trigger.config.event_name,
                lambda event_name, payload: self._on_event(key, payload)
            )
        elif trigger.kind == TriggerKind.CONDITION:
            armed.last_value = False
            self._arm_poll(armed)

    def _arm_schedule(self, armed: ArmedTrigger, after: Optional[datetime] = None) -> None:
        key = armed.key
        reference = self.clock.now()
        if after is not None and after > reference:
            # A timer that fires early must not land on the slot it is firing for
            reference = after
        armed.next_fire_at = next_fire_time(armed.trigger.config.schedule, reference)
        armed.timer = self.clock.call_at(armed.next_fire_at, lambda: self._on_schedule(key))
        logger.debug(f"Trigger {armed.trigger.id} next fires at {armed.next_fire_at.isoformat()}")

    def _arm_poll(self, armed: ArmedTrigger) -> None:
        key = armed.key
        interval = armed.trigger.config.poll_interval or self.default_poll_interval
        armed.next_fire_at = self.clock.now() + timedelta(seconds=interval)
        armed.timer = self.clock.call_later(interval, lambda: self._on_poll(key))

    def _disarm(self, armed: ArmedTrigger) -> None:
        if armed.timer is not None:
            armed.timer.cancel()
            armed.timer = None
        if armed.unsubscribe is not None:
            armed.unsubscribe()
            armed.unsubscribe = None
        armed.next_fire_at = None

    def _on_schedule(self, key: TriggerKey) -> None:
        with self._lock:
            armed = self._registry.get(key)
            if armed is None or not armed.enabled:
                return
            self._arm_schedule(armed, after=armed.next_fire_at)
        self._fire(key, {})

    def _on_event(self, key: TriggerKey, payload: Dict[str, Any]) -> None:
        with self._lock:
            armed = self._registry.get(key)
            if armed is None or not armed.enabled:
                return
        self._fire(key, dict(payload))

    def _on_poll(self, key: TriggerKey) -> None:
        with self._lock:
            armed = self._registry.get(key)
            if armed is None or not armed.enabled:
                return
            self._arm_poll(armed)
            name = armed.trigger.config.predicate
            predicate = self._predicates.get(name)

        try:
            if predicate is None:
                raise TriggerEvaluationError(f"Predicate '{name}' is not registered", trigger_id=key[1])
            value = bool(predicate())
        except Exception as e:
            self._record_failure(key, e)
            return

        with self._lock:
            armed = self._registry.get(key)
            if armed is None:
                return
            rising = value and not armed.last_value
            armed.last_value = value
        if rising:
            self._fire(key, {})
        else:
            self._record_success(key)

    def _fire(self, key: TriggerKey, context: Dict[str, Any]) -> Optional[str]:
        flow_id, trigger_id = key
        try:
            execution_id = self.engine.execute(flow_id, context, trigger_id=trigger_id)
        except WorkflowStateError as e:
            logger.info(f"Trigger {trigger_id} skipped: {e.message}")
            return None
        except Exception as e:
            self._record_failure(key, e)
            return None

        with self._lock:
            armed = self._registry.get(key)
            if armed is not None:
                armed.fire_count += 1
                armed.last_fired_at = self.clock.now()
        self._record_success(key)
        logger.info(f"Trigger {trigger_id} started execution {execution_id} of workflow {flow_id}")
        return execution_id

    def _record_success(self, key: TriggerKey) -> None:
        with self._lock:
            armed = self._registry.get(key)
            if armed is not None:
                armed.consecutive_failures = 0

    def _record_failure(self, key: TriggerKey, error: Exception) -> None:
        flow_id, trigger_id = key
        with self._lock:
            armed = self._registry.get(key)
            if armed is None:
                return
            armed.consecutive_failures += 1
            failures = armed.consecutive_failures
            logger.warning(f"Trigger {trigger_id} of workflow {flow_id} failed "
                           f"({failures}/{self.failure_threshold}): {str(error)}")
            if failures < self.failure_threshold:
                return
            armed.enabled = False
            armed.disabled_reason = f"{failures} consecutive failures: {str(error)}"
            self._disarm(armed)

        disabled = TriggerEvaluationError(
            f"Trigger {trigger_id} disabled after {failures} consecutive failures",
            trigger_id=trigger_id,
            consecutive_failures=failures
        ).add_context(flow_id=flow_id, last_error=str(error))
        log_with_context(logger, logging.ERROR, disabled.message, error=disabled.to_dict())
