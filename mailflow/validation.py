"""Structural validation of workflow definitions."""

from __future__ import annotations

from typing import Any, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from .contracts import EmailStep, WorkflowDraft
from .errors import ValidationError


def coerce_draft(data: Union[WorkflowDraft, Mapping[str, Any]]) -> WorkflowDraft:
    """Parse operator input into a ``WorkflowDraft``, raising ``ValidationError``."""
    if isinstance(data, WorkflowDraft):
        return data
    try:
        return WorkflowDraft.model_validate(dict(data))
    except PydanticValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ValidationError("Invalid workflow definition", problems) from exc


def collect_problems(workflow: WorkflowDraft) -> list[str]:
    problems: list[str] = []
    if not workflow.name or not workflow.name.strip():
        problems.append("Workflow must have a name")
    if workflow.trigger is None:
        problems.append("Workflow must have a trigger")
    if not workflow.steps:
        problems.append("Workflow must have at least one step")
        return problems

    step_ids: set[str] = set()
    for step in workflow.steps:
        if step.id in step_ids:
            problems.append(f"Duplicate step id: {step.id}")
        step_ids.add(step.id)

    for step in workflow.steps:
        for ref in step.outgoing_refs():
            if ref not in step_ids:
                problems.append(f"Step {step.id} references non-existent step: {ref}")
        if isinstance(step, EmailStep) and not step.template_id.strip():
            problems.append(f"Email step {step.id} must have a template ID")
    return problems


def validate_definition(workflow: WorkflowDraft) -> None:
    """Raise ``ValidationError`` listing every structural problem found."""
    problems = collect_problems(workflow)
    if problems:
        raise ValidationError(f"Invalid workflow: {problems[0]}", problems)
