import json
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from src.core.workflow.errors import WorkflowDefinitionError
from src.core.workflow.models import (
    CITIZEN_ROLE,
    SYSTEM_ROLE,
    WorkflowDefinition,
    WorkflowStateDefinition,
    WorkflowSummary,
    WorkflowTransitionDefinition,
)

RESUBMIT_ACTION = "RESUBMIT"
CLOSE_ACTION = "CLOSE"
DEFAULT_SERVICE_PACKS_DIR = Path(__file__).with_name("service_packs")


@dataclass(frozen=True)
class OfficerLevel:
    state_id: str
    role_id: str
    forward_transition_id: Optional[str]
    approve_transition_id: Optional[str]
    reject_transition_id: str
    query_transition_id: Optional[str]


class CompiledWorkflow:
    """Validated lookup table over a workflow definition.

    Regular transitions are keyed by ``(from_state, action)``. RESUBMIT transitions
    are return routes for answered queries and are only reachable by transition id.
    """

    def __init__(self, definition: WorkflowDefinition) -> None:
        self.definition = definition
        self.states: dict[str, WorkflowStateDefinition] = {}
        self.transitions_by_id: dict[str, WorkflowTransitionDefinition] = {}
        self.transitions: dict[tuple[str, str], WorkflowTransitionDefinition] = {}
        self._build()
        self.officer_levels = _parse_officer_levels(self)
        self._validate_officer_chain()

    @property
    def service_key(self) -> str:
        return self.definition.service_key

    @property
    def initial_state(self) -> WorkflowStateDefinition:
        return next(state for state in self.definition.states if state.type == "INITIAL")

    def state(self, state_id: str) -> WorkflowStateDefinition:
        state = self.states.get(state_id)
        if state is None:
            raise WorkflowDefinitionError(
                f"WORKFLOW_DEFINITION_INVALID: unknown state {state_id} in {self.service_key}"
            )
        return state

    def transition_for(
        self, *, state_id: str, action: str
    ) -> Optional[WorkflowTransitionDefinition]:
        return self.transitions.get((state_id, action))

    def transition_by_id(self, transition_id: str) -> Optional[WorkflowTransitionDefinition]:
        return self.transitions_by_id.get(transition_id)

    def actions_from(self, state_id: str) -> list[str]:
        return sorted(action for from_state, action in self.transitions if from_state == state_id)

    def return_transition_for(
        self, query_transition: WorkflowTransitionDefinition
    ) -> WorkflowTransitionDefinition:
        if query_transition.query_transition_id:
            return self.transitions_by_id[query_transition.query_transition_id]
        for transition in self.definition.transitions:
            if (
                transition.action == RESUBMIT_ACTION
                and transition.to_state == query_transition.from_state
            ):
                return transition
        raise WorkflowDefinitionError(
            "WORKFLOW_DEFINITION_INVALID: no RESUBMIT route back to "
            f"{query_transition.from_state} in {self.service_key}"
        )

    def summary(self) -> WorkflowSummary:
        return WorkflowSummary(
            service_key=self.definition.service_key,
            version=self.definition.version,
            display_name=self.definition.display_name,
            officer_chain=list(self.definition.officer_chain),
        )

    def _build(self) -> None:
        key = self.service_key
        for state in self.definition.states:
            if state.state_id in self.states:
                _invalid(key, f"duplicate state {state.state_id}")
            if state.type == "TASK" and not state.role_id:
                _invalid(key, f"task state {state.state_id} has no role_id")
            if state.disposal is not None and state.type != "TERMINAL":
                _invalid(key, f"disposal on non-terminal state {state.state_id}")
            self.states[state.state_id] = state

        initial_states = [state for state in self.definition.states if state.type == "INITIAL"]
        if len(initial_states) != 1:
            _invalid(key, "exactly one INITIAL state is required")
        if not any(state.disposal is not None for state in self.definition.states):
            _invalid(key, "no disposal state defined")

        for transition in self.definition.transitions:
            if transition.transition_id in self.transitions_by_id:
                _invalid(key, f"duplicate transition {transition.transition_id}")
            for state_id in (transition.from_state, transition.to_state):
                if state_id not in self.states:
                    _invalid(
                        key,
                        f"transition {transition.transition_id} references "
                        f"unknown state {state_id}",
                    )
            source = self.states[transition.from_state]
            if source.type == "TASK" and transition.role not in (source.role_id, SYSTEM_ROLE):
                _invalid(
                    key,
                    f"transition {transition.transition_id} role {transition.role} "
                    f"does not match task role {source.role_id}",
                )
            if source.type == "TERMINAL" and (
                transition.role != SYSTEM_ROLE
                or self.states[transition.to_state].type != "TERMINAL"
            ):
                _invalid(
                    key,
                    f"terminal state {source.state_id} may only close into a terminal state",
                )
            self.transitions_by_id[transition.transition_id] = transition
            if transition.action == RESUBMIT_ACTION:
                continue
            lookup_key = (transition.from_state, transition.action)
            if lookup_key in self.transitions:
                _invalid(
                    key,
                    f"duplicate action {transition.action} from state {transition.from_state}",
                )
            self.transitions[lookup_key] = transition

        self._validate_query_links()
        self._validate_close_steps()
        self._validate_reachability()

    def _validate_query_links(self) -> None:
        key = self.service_key
        for transition in self.definition.transitions:
            target = self.states[transition.to_state]
            if target.type != "QUERY":
                if transition.query_transition_id:
                    _invalid(
                        key,
                        f"transition {transition.transition_id} is not a query transition",
                    )
                continue
            if transition.query_transition_id:
                linked = self.transitions_by_id.get(transition.query_transition_id)
                if linked is None:
                    _invalid(
                        key,
                        f"query transition {transition.transition_id} links to unknown "
                        f"transition {transition.query_transition_id}",
                    )
                if linked.action != RESUBMIT_ACTION or linked.to_state != transition.from_state:
                    _invalid(
                        key,
                        f"query link {linked.transition_id} does not route back to "
                        f"{transition.from_state}",
                    )
            else:
                self.return_transition_for(transition)
            respond = self.transitions.get((target.state_id, "QUERY_RESPOND"))
            if respond is None or respond.role != CITIZEN_ROLE:
                _invalid(key, f"query state {target.state_id} has no citizen QUERY_RESPOND")

    def _validate_close_steps(self) -> None:
        for state in self.definition.states:
            if state.disposal is None:
                continue
            close = self.transitions.get((state.state_id, CLOSE_ACTION))
            if close is None or close.role != SYSTEM_ROLE:
                _invalid(
                    self.service_key,
                    f"disposal state {state.state_id} has no SYSTEM CLOSE transition",
                )

    def _validate_reachability(self) -> None:
        reachable = {self.initial_state.state_id}
        pending = deque(reachable)
        while pending:
            current = pending.popleft()
            for transition in self.definition.transitions:
                if transition.from_state == current and transition.to_state not in reachable:
                    reachable.add(transition.to_state)
                    pending.append(transition.to_state)
        unreachable = sorted(
            state.state_id
            for state in self.definition.states
            if state.state_id not in reachable
        )
        if unreachable:
            _invalid(self.service_key, f"unreachable states {', '.join(unreachable)}")

    def _validate_officer_chain(self) -> None:
        parsed = [level.role_id for level in self.officer_levels]
        if parsed != list(self.definition.officer_chain):
            _invalid(
                self.service_key,
                f"officer_chain {self.definition.officer_chain} does not match "
                f"forward path {parsed}",
            )


def _parse_officer_levels(workflow: CompiledWorkflow) -> list[OfficerLevel]:
    submit = workflow.transition_for(state_id=workflow.initial_state.state_id, action="SUBMIT")
    if submit is None:
        _invalid(workflow.service_key, "initial state has no SUBMIT transition")
    assign = workflow.transition_for(state_id=submit.to_state, action="ASSIGN")
    current_state_id = assign.to_state if assign is not None else submit.to_state

    levels: list[OfficerLevel] = []
    visited: set[str] = set()
    while current_state_id not in visited:
        visited.add(current_state_id)
        state = workflow.states.get(current_state_id)
        if state is None or state.type != "TASK":
            break
        forward = workflow.transition_for(state_id=current_state_id, action="FORWARD")
        approve = workflow.transition_for(state_id=current_state_id, action="APPROVE")
        reject = workflow.transition_for(state_id=current_state_id, action="REJECT")
        query = workflow.transition_for(state_id=current_state_id, action="QUERY")
        if reject is None:
            _invalid(workflow.service_key, f"no REJECT transition from {current_state_id}")
        if forward is None and approve is None:
            _invalid(
                workflow.service_key,
                f"last officer at {current_state_id} has no FORWARD and no APPROVE transition",
            )
        levels.append(
            OfficerLevel(
                state_id=current_state_id,
                role_id=state.role_id,
                forward_transition_id=forward.transition_id if forward else None,
                approve_transition_id=approve.transition_id if approve else None,
                reject_transition_id=reject.transition_id,
                query_transition_id=query.transition_id if query else None,
            )
        )
        if forward is None:
            break
        current_state_id = forward.to_state
    if not levels:
        _invalid(workflow.service_key, "no officer task states after submission")
    return levels


def _invalid(service_key: str, detail: str) -> None:
    raise WorkflowDefinitionError(f"WORKFLOW_DEFINITION_INVALID: {service_key}: {detail}")


def load_workflow_definition(payload: dict[str, Any]) -> CompiledWorkflow:
    try:
        definition = WorkflowDefinition.model_validate(payload)
    except ValidationError as exc:
        service_key = payload.get("service_key", "<unknown>") if isinstance(payload, dict) else ""
        raise WorkflowDefinitionError(
            f"WORKFLOW_DEFINITION_INVALID: {service_key}: {exc.errors()[0]['msg']}"
        ) from exc
    return CompiledWorkflow(definition)


class WorkflowRegistry:
    def __init__(self, workflows: Optional[list[CompiledWorkflow]] = None) -> None:
        self._workflows: dict[str, CompiledWorkflow] = {}
        for workflow in workflows or []:
            self.register(workflow)

    @classmethod
    def from_directory(cls, directory: Optional[Path] = None) -> "WorkflowRegistry":
        root = Path(directory) if directory is not None else DEFAULT_SERVICE_PACKS_DIR
        if not root.is_dir():
            raise WorkflowDefinitionError(f"WORKFLOW_DEFINITION_INVALID: missing directory {root}")
        workflows = []
        for path in sorted(root.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise WorkflowDefinitionError(
                    f"WORKFLOW_DEFINITION_INVALID: {path.name} contains invalid JSON: {exc.msg}"
                ) from exc
            workflows.append(load_workflow_definition(payload))
        return cls(workflows)

    def register(self, workflow: CompiledWorkflow) -> None:
        if workflow.service_key in self._workflows:
            raise WorkflowDefinitionError(
                f"WORKFLOW_DEFINITION_INVALID: duplicate service {workflow.service_key}"
            )
        self._workflows[workflow.service_key] = workflow

    def get(self, service_key: str) -> CompiledWorkflow:
        workflow = self._workflows.get(service_key)
        if workflow is None:
            raise WorkflowDefinitionError(f"WORKFLOW_NOT_FOUND: {service_key}")
        return workflow

    def list(self) -> list[CompiledWorkflow]:
        return [self._workflows[key] for key in sorted(self._workflows)]
