from dataclasses import dataclass
from typing import Literal, Optional

from src.core.workflow.definitions import CompiledWorkflow, OfficerLevel

PathStepKind = Literal["SUBMIT", "ACTION", "QUERY_RESPONSE", "CLOSE"]


@dataclass(frozen=True)
class PathStep:
    kind: PathStepKind
    expected_state: str
    action: Optional[str] = None
    actor_role: Optional[str] = None


def build_happy_path(workflow: CompiledWorkflow) -> list[PathStep]:
    """Submit, FORWARD at every officer level, APPROVE at the last one, then close."""
    steps = [_submit_step(workflow)]
    levels = workflow.officer_levels
    for index, level in enumerate(levels):
        if level.forward_transition_id and index < len(levels) - 1:
            steps.append(_action_step(workflow, level, "FORWARD"))
        else:
            steps.append(_action_step(workflow, level, "APPROVE"))
            break
    steps.append(_close_step(workflow, steps[-1].expected_state))
    return steps


def build_rejection_path(workflow: CompiledWorkflow, level_index: int) -> list[PathStep]:
    levels = workflow.officer_levels
    if not 0 <= level_index < len(levels):
        raise IndexError(f"officer level {level_index} outside chain of {len(levels)}")
    steps = [_submit_step(workflow)]
    for level in levels[:level_index]:
        steps.append(_action_step(workflow, level, "FORWARD"))
    steps.append(_action_step(workflow, levels[level_index], "REJECT"))
    steps.append(_close_step(workflow, steps[-1].expected_state))
    return steps


def build_query_loop_path(workflow: CompiledWorkflow, level_index: int = 0) -> list[PathStep]:
    """Raise a query at one officer level, answer it, then finish the happy path."""
    levels = workflow.officer_levels
    level = levels[level_index]
    if level.query_transition_id is None:
        raise ValueError(f"{level.state_id} has no QUERY transition")
    happy = build_happy_path(workflow)
    prefix = happy[: level_index + 1]
    query_transition = workflow.transition_by_id(level.query_transition_id)
    loop = [
        PathStep(
            kind="ACTION",
            action="QUERY",
            actor_role=level.role_id,
            expected_state=query_transition.to_state,
        ),
        PathStep(kind="QUERY_RESPONSE", expected_state=level.state_id),
    ]
    return prefix + loop + happy[level_index + 1 :]


def _submit_step(workflow: CompiledWorkflow) -> PathStep:
    return PathStep(kind="SUBMIT", expected_state=workflow.officer_levels[0].state_id)


def _action_step(workflow: CompiledWorkflow, level: OfficerLevel, action: str) -> PathStep:
    transition = workflow.transition_for(state_id=level.state_id, action=action)
    return PathStep(
        kind="ACTION",
        action=action,
        actor_role=level.role_id,
        expected_state=transition.to_state,
    )


def _close_step(workflow: CompiledWorkflow, disposal_state: str) -> PathStep:
    transition = workflow.transition_for(state_id=disposal_state, action="CLOSE")
    return PathStep(kind="CLOSE", expected_state=transition.to_state)
