"""Rule Engine: side-effect policies evaluated against execution log entries."""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..models.core import ExecutionLogEntry, ExecutionLogLevel, RuleDefinition, RuleKind
from .actor import Actor
from .collaborators import NotificationSender, TaskStore
from .conditions import evaluate_condition
from .logging import get_logger, log_with_context
from .messages import AppendLog, FailInstance

logger = get_logger(__name__)


@dataclass(frozen=True)
class RuleEvaluation:
    """One engine log entry offered to the rules of its execution."""
    execution_id: str
    entry: ExecutionLogEntry
    context: Dict[str, Any]
    rules: List[RuleDefinition]
    reply: Callable[[Any], None]


def order_rules(rules: List[RuleDefinition]) -> List[RuleDefinition]:
    """Enabled rules, high priority first; declared order within a priority."""
    enabled = [rule for rule in rules if rule.enabled]
    return sorted(enabled, key=lambda rule: rule.priority.rank)


class RuleEngine(Actor):
    """
    Evaluates rules for every log entry written by the Execution Engine.

    At most one rule fires per entry: the first enabled rule, in priority
    order, whose condition matches. Effects on the execution itself are sent
    back to its actor as messages.
    """

    def __init__(self, task_store: TaskStore, notification_sender: NotificationSender, executor: Executor):
        super().__init__("rule-engine", executor)
        self.task_store = task_store
        self.notification_sender = notification_sender
        self._actions = {
            RuleKind.AUTOMATION: self._run_automation,
            RuleKind.VALIDATION: self._run_validation,
            RuleKind.NOTIFICATION: self._run_notification,
            RuleKind.ESCALATION: self._run_escalation,
        }

    def offer(self, evaluation: RuleEvaluation) -> None:
        self.post(evaluation)

    def receive(self, message: RuleEvaluation) -> None:
        rule = self.match(message.entry, message.context, message.rules)
        if rule is None:
            return
        log_with_context(
            logger, logging.INFO,
            f"Rule '{rule.name or rule.id}' fired for execution {message.execution_id}",
            rule_id=rule.id,
            rule_kind=rule.kind.value,
            execution_id=message.execution_id,
            entry_seq=message.entry.seq
        )
        try:
            self._actions[rule.kind](rule, message)
        except Exception as e:
            logger.error(f"Action of rule '{rule.id}' failed for execution {message.execution_id}: {str(e)}",
                         exc_info=True)
            message.reply(AppendLog(
                level=ExecutionLogLevel.ERROR,
                message=f"Rule '{rule.name or rule.id}' action failed: {str(e)}",
                node_id=message.entry.node_id,
                visit=message.entry.visit,
                data={"rule_id": rule.id, "error_type": type(e).__name__}
            ))

    def match(self, entry: ExecutionLogEntry, context: Dict[str, Any],
              rules: List[RuleDefinition]) -> Optional[RuleDefinition]:
        """First enabled rule whose condition holds for the entry, or None."""
        names = {
            "level": entry.level.value,
            "message": entry.message,
            "node_id": entry.node_id,
            "visit": entry.visit,
            "data": entry.data or {},
            "seq": entry.seq,
        }
        for rule in order_rules(rules):
            if evaluate_condition(rule.condition, context, names):
                return rule
        return None

    def _run_automation(self, rule: RuleDefinition, evaluation: RuleEvaluation) -> None:
        action = rule.action
        task = self.task_store.create_task(
            title=action.task_title or action.description or rule.name or rule.id,
            priority=action.priority or "medium",
            assignee=action.assignee,
            metadata={"execution_id": evaluation.execution_id, "rule_id": rule.id, "node_id": evaluation.entry.node_id}
        )
        evaluation.reply(AppendLog(
            level=ExecutionLogLevel.INFO,
            message=f"Rule '{rule.name or rule.id}' created task '{task.title}'",
            node_id=evaluation.entry.node_id,
            visit=evaluation.entry.visit,
            data={"rule_id": rule.id, "task_id": task.id}
        ))

    def _run_validation(self, rule: RuleDefinition, evaluation: RuleEvaluation) -> None:
        action = rule.action
        text = action.message or action.description or f"Validation rule '{rule.name or rule.id}' matched"
        if action.effect == "fail":
            evaluation.reply(FailInstance(
                message=text,
                rule_id=rule.id,
                node_id=evaluation.entry.node_id,
                visit=evaluation.entry.visit
            ))
        else:
            evaluation.reply(AppendLog(
                level=ExecutionLogLevel.WARNING,
                message=text,
                node_id=evaluation.entry.node_id,
                visit=evaluation.entry.visit,
                data={"rule_id": rule.id}
            ))

    def _run_notification(self, rule: RuleDefinition, evaluation: RuleEvaluation) -> None:
        action = rule.action
        payload = {
            "execution_id": evaluation.execution_id,
            "rule_id": rule.id,
            "message": action.message or evaluation.entry.message,
            "node_id": evaluation.entry.node_id,
        }
        payload.update(action.payload)
        self.notification_sender.send(action.notification_type, list(action.recipients), payload)

    def _run_escalation(self, rule: RuleDefinition, evaluation: RuleEvaluation) -> None:
        action = rule.action
        data = evaluation.entry.data or {}
        task_id = action.task_id or data.get("task_id") or data.get("error", {}).get("context", {}).get("task_id")
        if not task_id:
            logger.warning(f"Escalation rule '{rule.id}' matched an entry without a task to escalate")
            return
        task = self.task_store.update_task(task_id, priority=action.priority or "high", assignee=action.assignee)
        evaluation.reply(AppendLog(
            level=ExecutionLogLevel.WARNING,
            message=f"Rule '{rule.name or rule.id}' escalated task '{task.title}'",
            node_id=evaluation.entry.node_id,
            visit=evaluation.entry.visit,
            data={"rule_id": rule.id, "task_id": task.id, "priority": task.priority, "assignee": task.assignee}
        ))
