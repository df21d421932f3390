"""Funnel step model, normalization and share-link encoding."""

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from utils.sql_escape import normalize_url_to_path

logger = logging.getLogger(__name__)

PATH = "path"
EVENT = "event"
STEP_KINDS = (PATH, EVENT)

SCOPE_CURRENT_PATH = "current-path"
SCOPE_ANYWHERE = "anywhere"
EVENT_SCOPES = (SCOPE_CURRENT_PATH, SCOPE_ANYWHERE)

PARAM_EQUALS = "equals"
PARAM_CONTAINS = "contains"

MIN_FUNNEL_STEPS = 2

_EVENT_PREFIX = "event:"
_PARAM_PREFIX = "param:"
_CONTAINS_MARKER = "~"


@dataclass(frozen=True)
class StepParam:
    key: str
    value: str
    operator: str = PARAM_EQUALS


@dataclass(frozen=True)
class FunnelStep:
    kind: str
    value: str
    event_scope: Optional[str] = None
    params: Tuple[StepParam, ...] = ()

    @property
    def is_path(self) -> bool:
        return self.kind == PATH

    @property
    def is_event(self) -> bool:
        return self.kind == EVENT


def path_step(value: str) -> FunnelStep:
    return FunnelStep(PATH, value)


def event_step(
    name: str,
    event_scope: str = SCOPE_CURRENT_PATH,
    params: Sequence[StepParam] = ()
) -> FunnelStep:
    return FunnelStep(EVENT, name, event_scope, tuple(params))


def normalize_step(step: FunnelStep) -> Optional[FunnelStep]:
    """
    Canonical form of a single step, or None when the step cannot be compiled.

    Path values are reduced to the stored path form. Event values are trimmed
    and keep their parameter filters, minus any with a blank key or value.
    """
    if step.kind not in STEP_KINDS:
        return None

    if step.is_path:
        value = normalize_url_to_path(step.value)
        return FunnelStep(PATH, value) if value else None

    value = step.value.strip()
    if not value:
        return None
    params = tuple(
        StepParam(p.key.strip(), p.value, p.operator if p.operator == PARAM_CONTAINS else PARAM_EQUALS)
        for p in step.params
        if p.key.strip() and p.value
    )
    scope = step.event_scope if step.event_scope in EVENT_SCOPES else SCOPE_CURRENT_PATH
    return FunnelStep(EVENT, value, scope, params)


def normalize_steps(steps: Sequence[FunnelStep]) -> List[FunnelStep]:
    """Normalize every step and drop the ones that end up empty or malformed."""
    normalized = [normalize_step(s) for s in steps]
    kept = [s for s in normalized if s is not None]
    if len(kept) < len(steps):
        logger.debug("Dropped %d empty or malformed funnel steps", len(steps) - len(kept))
    return kept


def timing_steps(steps: Sequence[FunnelStep]) -> List[FunnelStep]:
    """Path steps only; elapsed time is measured between page views."""
    return [s for s in normalize_steps(steps) if s.is_path]


def validate_steps(steps: Sequence[FunnelStep]) -> Optional[str]:
    """Message for the user when the funnel cannot be compiled, else None."""
    if len(normalize_steps(steps)) < MIN_FUNNEL_STEPS:
        return f"A funnel needs at least {MIN_FUNNEL_STEPS} steps with a URL or event."
    return None


def validate_timing_steps(steps: Sequence[FunnelStep]) -> Optional[str]:
    if len(timing_steps(steps)) < MIN_FUNNEL_STEPS:
        return f"Time spent needs at least {MIN_FUNNEL_STEPS} URL steps."
    return None


# Share link encoding

def step_to_param(step: FunnelStep) -> str:
    """
    Encode one step for the page URL.

    Path steps are the path itself; event steps are
    event:<name>|<scope>|param:<key>=<value>|... with `~=` in place of `=`
    for contains filters.
    """
    if step.is_path:
        return step.value
    parts = [f"{_EVENT_PREFIX}{step.value}", step.event_scope or SCOPE_CURRENT_PATH]
    parts.extend(
        f"{_PARAM_PREFIX}{p.key}{_CONTAINS_MARKER if p.operator == PARAM_CONTAINS else ''}={p.value}"
        for p in step.params
    )
    return "|".join(parts)


def steps_to_params(steps: Sequence[FunnelStep]) -> List[str]:
    return [step_to_param(s) for s in steps]


def step_from_param(param: str) -> FunnelStep:
    if not param.startswith(_EVENT_PREFIX):
        return path_step(param)

    parts = param.split("|")
    name = parts[0][len(_EVENT_PREFIX):]
    scope = SCOPE_CURRENT_PATH
    params = []
    for part in parts[1:]:
        if part in EVENT_SCOPES:
            scope = part
        elif part.startswith(_PARAM_PREFIX):
            key, _, value = part[len(_PARAM_PREFIX):].partition("=")
            operator = PARAM_EQUALS
            if key.endswith(_CONTAINS_MARKER):
                key, operator = key[:-len(_CONTAINS_MARKER)], PARAM_CONTAINS
            if key and value:
                params.append(StepParam(key, value, operator))
    return event_step(name, scope, params)


def parse_steps_from_params(values: Sequence[str]) -> List[FunnelStep]:
    """Steps from the repeated ?step= query parameter; two blank steps when absent."""
    if not values:
        return [path_step(""), path_step("")]
    return [step_from_param(v) for v in values]


def direct_entry_to_param(only_direct_entry: bool) -> str:
    return "true" if only_direct_entry else "false"


def direct_entry_from_param(value: Optional[str]) -> bool:
    """The ?strict= flag; direct entry is on unless the link turns it off."""
    if value is None:
        return True
    return value == "true"


# Immutable edit helpers for the step editor

def add_step(steps: Sequence[FunnelStep]) -> List[FunnelStep]:
    return [*steps, FunnelStep(PATH, "", SCOPE_CURRENT_PATH)]


def remove_step(steps: Sequence[FunnelStep], index: int) -> List[FunnelStep]:
    if len(steps) <= MIN_FUNNEL_STEPS:
        return list(steps)
    return [s for i, s in enumerate(steps) if i != index]


def update_step_value(steps: Sequence[FunnelStep], index: int, value: str) -> List[FunnelStep]:
    updated = list(steps)
    updated[index] = replace(updated[index], value=value)
    return updated


def update_step_kind(steps: Sequence[FunnelStep], index: int, kind: str) -> List[FunnelStep]:
    """Switch a step between path and event; the value is cleared."""
    updated = list(steps)
    if kind == EVENT:
        scope = SCOPE_ANYWHERE if index == 0 else SCOPE_CURRENT_PATH
        updated[index] = replace(updated[index], kind=kind, value="", event_scope=scope)
    else:
        updated[index] = replace(updated[index], kind=kind, value="")
    return updated


def update_step_event_scope(steps: Sequence[FunnelStep], index: int, scope: str) -> List[FunnelStep]:
    updated = list(steps)
    updated[index] = replace(updated[index], event_scope=scope)
    return updated


def add_step_param(steps: Sequence[FunnelStep], index: int) -> List[FunnelStep]:
    updated = list(steps)
    step = updated[index]
    updated[index] = replace(step, params=(*step.params, StepParam("", "", PARAM_EQUALS)))
    return updated


def remove_step_param(steps: Sequence[FunnelStep], step_index: int, param_index: int) -> List[FunnelStep]:
    updated = list(steps)
    step = updated[step_index]
    params = tuple(p for i, p in enumerate(step.params) if i != param_index)
    updated[step_index] = replace(step, params=params)
    return updated


def update_step_param(
    steps: Sequence[FunnelStep],
    step_index: int,
    param_index: int,
    field: str,
    value: str
) -> List[FunnelStep]:
    """Set key, value or operator of one parameter filter."""
    updated = list(steps)
    step = updated[step_index]
    if param_index >= len(step.params) or field not in ("key", "value", "operator"):
        return updated
    params = list(step.params)
    params[param_index] = replace(params[param_index], **{field: value})
    updated[step_index] = replace(step, params=tuple(params))
    return updated
