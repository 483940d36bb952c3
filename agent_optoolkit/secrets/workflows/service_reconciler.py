"""Restart or reload services whose secrets changed.

Planning and execution are separate steps: ``build_plan`` is a pure function of
the process result and the bindings, ``execute_plan`` performs the actions.
"""
import logging
from typing import Dict, Iterable, List

from ..domains.errors import ReconciliationError, ServiceControlError
from ..domains.models import (
    DEFAULT_SERVICE_TIMEOUT,
    ActionKind,
    PlannedAction,
    ProcessResult,
    ReconciliationPlan,
    ReconciliationResult,
    ServiceBinding,
    ServiceOutcome,
)
from ..domains.service_control import ServiceController

logger = logging.getLogger(__name__)


def build_plan(result: ProcessResult, bindings: Iterable[ServiceBinding]) -> ReconciliationPlan:
    """
    Ordered, deduplicated list of service actions.

    A service is scheduled once, at the position of its first matching binding.
    If matching bindings disagree on the action, restart wins over reload.
    """
    changed = result.changed_keys
    planned: Dict[str, ActionKind] = {}
    for binding in bindings:
        if not binding.depends_on_keys & changed:
            continue
        if binding.service_name not in planned or binding.action is ActionKind.RESTART:
            planned[binding.service_name] = binding.action
    return ReconciliationPlan(tuple(PlannedAction(name, action) for name, action in planned.items()))


class ServiceReconciler:
    """Executes reconciliation plans against a service controller."""

    def __init__(self, controller: ServiceController, timeout: float = DEFAULT_SERVICE_TIMEOUT):
        self.controller = controller
        self.timeout = timeout

    def execute_plan(self, plan: ReconciliationPlan) -> ReconciliationResult:
        """Run every planned action in order; failures do not stop the rest."""
        outcomes: List[ServiceOutcome] = []
        for planned in plan:
            logger.info(f"Running {planned.action.value} on {planned.service_name}")
            try:
                self.controller.perform_action(planned.service_name, planned.action, self.timeout)
            except ServiceControlError as e:
                logger.error(f"{planned.action.value} of {planned.service_name} failed: {e.message}")
                outcomes.append(ServiceOutcome(planned.service_name, planned.action, False, e.message))
                continue
            outcomes.append(ServiceOutcome(planned.service_name, planned.action, True))
        return ReconciliationResult(tuple(outcomes))

    def reconcile(self, result: ProcessResult, bindings: Iterable[ServiceBinding]) -> ReconciliationResult:
        """
        Plan and execute.

        Raises:
            ReconciliationError: If any planned action failed; carries every outcome
        """
        plan = build_plan(result, bindings)
        if not plan:
            logger.info("No services depend on changed secrets")
            return ReconciliationResult()

        logger.info(f"Reconciling {len(plan)} service(s): {', '.join(a.service_name for a in plan)}")
        outcome = self.execute_plan(plan)
        if not outcome.ok:
            errors = [
                ServiceControlError(
                    o.reason, service_name=o.service_name, stage=f"Running {o.action.value}",
                    suggestions=[f"Check systemd service logs: journalctl -u {o.service_name}"],
                )
                for o in outcome.failed
            ]
            raise ReconciliationError(
                outcome, errors,
                suggestions=[
                    "Check if specified services exist and are accessible",
                    "Verify systemctl permissions",
                    "Review systemd integration configuration",
                ],
            )
        return outcome
