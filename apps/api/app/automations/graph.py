from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any

import pydantic

from app.automations.errors import ValidationError
from app.automations.models import AutomationStep
from app.automations.schemas import (
    GraphPublishRequest,
    StepSpec,
    StepType,
    TriggerType,
    normalize_filter,
)


@dataclass(slots=True)
class PublishedGraph:
    specs: list[StepSpec]
    trigger_type: TriggerType | None
    trigger_filter: dict[str, Any] | None


def _is_explicitly_linked(specs: list[StepSpec]) -> bool:
    link_fields = {"next", "true_next", "false_next"}
    return any(link_fields & spec.model_fields_set for spec in specs)


def resolve_links(specs: list[StepSpec]) -> dict[str, dict[str, str | None]]:
    """Return ``{key: {"next", "true_next", "false_next"}}`` for a list of step specs.

    A list where no step names a successor is a plain sequence; otherwise every
    link is taken literally and an omitted ``next`` ends the run.
    """
    chained = not _is_explicitly_linked(specs)
    links: dict[str, dict[str, str | None]] = {}
    for index, spec in enumerate(specs):
        if spec.step_type == StepType.CONDITION:
            links[spec.key] = {"next": None, "true_next": spec.true_next, "false_next": spec.false_next}
            continue
        if chained:
            following = specs[index + 1].key if index + 1 < len(specs) else None
            links[spec.key] = {"next": following, "true_next": None, "false_next": None}
        else:
            links[spec.key] = {"next": spec.next, "true_next": None, "false_next": None}
    return links


def validate_graph(specs: list[StepSpec]) -> dict[str, dict[str, str | None]]:
    keys = [spec.key for spec in specs]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ValidationError("duplicate step keys", details={"keys": duplicates})

    links = resolve_links(specs)
    known = set(keys)
    for key, targets in links.items():
        for field_name, target in targets.items():
            if target is not None and target not in known:
                raise ValidationError(
                    f"step {key} references unknown step {target}",
                    details={"step": key, "field": field_name, "target": target},
                )
            if target == key:
                raise ValidationError(f"step {key} references itself", details={"step": key})

    _assert_acyclic(keys, links)

    if specs:
        reachable = _reachable_from(specs[0].key, links)
        unreachable = [key for key in keys if key not in reachable]
        if unreachable:
            raise ValidationError("steps are unreachable from the first step", details={"keys": unreachable})
    return links


def _successors(links: dict[str, dict[str, str | None]], key: str) -> list[str]:
    return [target for target in links[key].values() if target is not None]


def _assert_acyclic(keys: list[str], links: dict[str, dict[str, str | None]]) -> None:
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(key: str, trail: list[str]) -> None:
        if key in done:
            return
        if key in visiting:
            cycle = trail[trail.index(key):] + [key]
            raise ValidationError("step graph contains a cycle", details={"cycle": cycle})
        visiting.add(key)
        for target in _successors(links, key):
            visit(target, trail + [key])
        visiting.discard(key)
        done.add(key)

    for key in keys:
        visit(key, [])


def _reachable_from(entry: str, links: dict[str, dict[str, str | None]]) -> set[str]:
    seen = {entry}
    queue = deque([entry])
    while queue:
        key = queue.popleft()
        for target in _successors(links, key):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def build_step_rows(workflow_id: uuid.UUID, version: int, specs: list[StepSpec]) -> list[AutomationStep]:
    links = validate_graph(specs)
    ids = {spec.key: uuid.uuid4() for spec in specs}

    def _id(key: str | None) -> uuid.UUID | None:
        return ids[key] if key is not None else None

    rows: list[AutomationStep] = []
    for position, spec in enumerate(specs):
        targets = links[spec.key]
        rows.append(
            AutomationStep(
                id=ids[spec.key],
                workflow_id=workflow_id,
                workflow_version=version,
                step_key=spec.key,
                step_type=spec.step_type.value,
                config=spec.config,
                position=position,
                next_step_id=_id(targets["next"]),
                true_step_id=_id(targets["true_next"]),
                false_step_id=_id(targets["false_next"]),
            )
        )
    return rows


def specs_from_builder_graph(request: GraphPublishRequest) -> PublishedGraph:
    """Turn a visual-builder graph (nodes + edges) into ordered step specs.

    Action nodes are collected breadth-first from the single trigger node;
    ``sourceHandle`` ``true``/``false`` edges become condition branches.
    """
    triggers = [node for node in request.nodes if node.type == "trigger"]
    if not triggers:
        raise ValidationError("workflow must have a trigger node")
    if len(triggers) > 1:
        raise ValidationError("workflow can only have one trigger node")
    trigger = triggers[0]

    edge_map: dict[str, dict[str, str]] = {}
    for edge in request.edges:
        handle = edge.sourceHandle if edge.sourceHandle in {"true", "false"} else "default"
        edge_map.setdefault(edge.source, {})[handle] = edge.target

    nodes_by_id = {node.id: node for node in request.nodes}
    trigger_type = _trigger_type_from(trigger.data)
    trigger_filter = trigger.data.get("triggerFilter")
    if trigger_filter is not None:
        try:
            trigger_filter = normalize_filter(trigger_filter)
        except (ValueError, pydantic.ValidationError) as exc:
            raise ValidationError("invalid trigger filter", details={"error": str(exc)}) from exc

    ordered: list[str] = []
    visited = {trigger.id}
    first = edge_map.get(trigger.id, {}).get("default")
    queue = deque([first] if first else [])
    while queue:
        node_id = queue.popleft()
        if node_id in visited or node_id not in nodes_by_id:
            continue
        visited.add(node_id)
        ordered.append(node_id)
        connections = edge_map.get(node_id, {})
        for handle in ("default", "true", "false"):
            target = connections.get(handle)
            if target and target not in visited:
                queue.append(target)

    included = set(ordered)
    specs: list[StepSpec] = []
    for node_id in ordered:
        node = nodes_by_id[node_id]
        connections = edge_map.get(node_id, {})
        step_type = node.data.get("stepType") or node.type
        payload: dict[str, Any] = {
            "key": node_id,
            "step_type": step_type,
            "config": node.data.get("config") or {},
        }
        if step_type == StepType.CONDITION:
            payload["true_next"] = _included(connections.get("true"), included)
            payload["false_next"] = _included(connections.get("false"), included)
        else:
            payload["next"] = _included(connections.get("default"), included)
        try:
            specs.append(StepSpec.model_validate(payload))
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"invalid step node {node_id}",
                details={"node_id": node_id, "errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    return PublishedGraph(specs=specs, trigger_type=trigger_type, trigger_filter=trigger_filter)


def _included(target: str | None, included: set[str]) -> str | None:
    if target is None or target not in included:
        return None
    return target


def _trigger_type_from(data: dict[str, Any]) -> TriggerType | None:
    raw = data.get("triggerType")
    if raw is None:
        return None
    try:
        return TriggerType(raw)
    except ValueError as exc:
        raise ValidationError(f"unknown trigger type {raw}") from exc
