# /telepharma/workflows/validator.py

"""
Structural validation of the flow catalog.

``validate_position`` checks a persisted (flow, step) pair against the
catalog and is used by the engine on every event. ``validate_catalog`` runs
once at startup and refuses to boot with a malformed catalog, so that a
missing reference or an automatic cycle never shows up as a runtime loop.

All functions are pure: no I/O, no logging, no state mutation.
"""

from typing import Dict, Iterator, List, Optional, Set, Tuple, TypedDict, FrozenSet

from telepharma.utils.errors import CatalogDefect
from telepharma.workflows.definitions import (
    Branch,
    FieldType,
    FINISH,
    Flow,
    InputMode,
    REGISTRATION_FLOW,
    ROOT,
    ROOT_FLOW,
    Rule,
    Step,
    SwitchTo,
)


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def validate_position(workflows: Dict[str, Flow], flow_id: Optional[str], step_id: Optional[str]) -> ValidationResult:
    """
    Validate that a stored conversation position exists in the catalog.

    ``flow_id=None`` is the root menu and must come with ``step_id=None``.
    """
    if flow_id is None:
        if step_id is not None:
            return {
                "is_valid": False,
                "error_code": "STEP_WITHOUT_FLOW",
                "message": f"Step '{step_id}' is set but no flow is active"
            }
        return {"is_valid": True, "error_code": None, "message": None}

    if flow_id not in workflows:
        return {
            "is_valid": False,
            "error_code": "UNKNOWN_FLOW",
            "message": f"Flow '{flow_id}' is not defined in WORKFLOWS"
        }

    if not step_id or step_id not in workflows[flow_id].steps:
        return {
            "is_valid": False,
            "error_code": "UNKNOWN_STEP",
            "message": f"Step '{step_id}' is not defined for flow '{flow_id}'"
        }

    return {"is_valid": True, "error_code": None, "message": None}


def iter_rule_leaves(rule: Rule) -> Iterator[Rule]:
    """Yields every non-branch target reachable through ``rule``."""
    if isinstance(rule, Branch):
        for case in rule.cases.values():
            yield from iter_rule_leaves(case)
        if rule.default is not None:
            yield from iter_rule_leaves(rule.default)
    else:
        yield rule


def _iter_branches(rule: Rule) -> Iterator[Branch]:
    if isinstance(rule, Branch):
        yield rule
        for case in rule.cases.values():
            yield from _iter_branches(case)
        if rule.default is not None:
            yield from _iter_branches(rule.default)


def _check_rule(
    workflows: Dict[str, Flow],
    flow: Flow,
    step: Step,
    rule: Rule,
    kind: str,
    collected: Set[str],
) -> List[str]:
    problems = []
    where = f"{flow.id}.{step.id} {kind}"

    for branch in _iter_branches(rule):
        if branch.on is None:
            if kind == "back":
                problems.append(f"{where}: back rules cannot branch on the accepted value")
            elif step.field_type != FieldType.CHOICE:
                problems.append(f"{where}: branching on the accepted value needs a choice step")
        elif branch.on not in collected:
            problems.append(f"{where}: branches on '{branch.on}' which no step collects")
        if not branch.cases:
            problems.append(f"{where}: branch has no cases")

    for leaf in iter_rule_leaves(rule):
        if isinstance(leaf, SwitchTo):
            if leaf.flow not in workflows:
                problems.append(f"{where}: switches to unknown flow '{leaf.flow}'")
        elif leaf == FINISH:
            if kind == "back":
                problems.append(f"{where}: back rule cannot finish the flow")
            elif flow.action is None:
                problems.append(f"{where}: finishes a flow without a terminal action")
        elif leaf == ROOT:
            continue
        elif leaf not in flow.steps:
            problems.append(f"{where}: targets missing step '{leaf}'")
        elif kind == "back" and flow.steps[leaf].field_type == FieldType.AUTO:
            problems.append(f"{where}: back rule targets automatic step '{leaf}'")
    return problems


def _check_options(step: Step, where: str, reserved_tokens: FrozenSet[str],
                   max_quick_replies: int, max_quick_reply_length: int) -> List[str]:
    problems = []
    if step.field_type != FieldType.CHOICE:
        if step.options or step.options_from:
            problems.append(f"{where}: only choice steps declare options")
        return problems

    if not step.options and not step.options_from:
        problems.append(f"{where}: choice step declares no options")

    tokens = [option.token for option in step.options]
    for token in tokens:
        if token in reserved_tokens:
            problems.append(f"{where}: option token '{token}' is a reserved navigation token")
    duplicates = sorted({token for token in tokens if tokens.count(token) > 1})
    if duplicates:
        problems.append(f"{where}: duplicate option tokens {duplicates}")

    if step.input_mode == InputMode.TOKEN:
        cap = min(step.max_options, max_quick_replies)
        if len(tokens) > cap:
            problems.append(f"{where}: {len(tokens)} options exceed the quick reply cap of {cap}; use numbered input")
        for token in tokens:
            if len(token) > max_quick_reply_length:
                problems.append(f"{where}: option token '{token}' is longer than {max_quick_reply_length} characters")
    return problems


def _find_automatic_cycle(workflows: Dict[str, Flow]) -> Optional[List[Tuple[str, str]]]:
    """Depth-first search over transitions that fire without user input."""
    def successors(node):
        flow = workflows[node[0]]
        step = flow.steps[node[1]]
        for leaf in iter_rule_leaves(step.next):
            if isinstance(leaf, SwitchTo):
                if leaf.flow in workflows:
                    target = workflows[leaf.flow]
                    if target.entry in target.steps:
                        yield (target.id, target.entry)
            elif leaf not in (FINISH, ROOT) and leaf in flow.steps:
                yield (flow.id, leaf)

    automatic = {
        (flow.id, step.id)
        for flow in workflows.values()
        for step in flow.steps.values()
        if step.field_type == FieldType.AUTO
    }
    visiting: List[Tuple[str, str]] = []
    done: Set[Tuple[str, str]] = set()

    def visit(node):
        if node in done:
            return None
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        visiting.append(node)
        for nxt in successors(node):
            if nxt in automatic:
                cycle = visit(nxt)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in sorted(automatic):
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def validate_catalog(
    workflows: Dict[str, Flow],
    reserved_tokens: FrozenSet[str],
    max_quick_replies: int = 3,
    max_quick_reply_length: int = 20,
) -> None:
    """
    Checks the whole catalog and raises CatalogDefect listing every problem.

    Args:
        workflows: flow id -> Flow
        reserved_tokens: back and abort tokens, which no option may reuse
        max_quick_replies: reply button cap of the messaging channel
        max_quick_reply_length: reply button title limit of the messaging channel
    """
    problems: List[str] = []

    for required in (ROOT_FLOW, REGISTRATION_FLOW):
        if required not in workflows:
            problems.append(f"catalog has no '{required}' flow")

    for flow_id, flow in workflows.items():
        if flow_id != flow.id:
            problems.append(f"flow registered as '{flow_id}' is named '{flow.id}'")
        if flow.entry not in flow.steps:
            problems.append(f"{flow.id}: entry step '{flow.entry}' does not exist")
        if flow.successor is not None and flow.successor not in workflows:
            problems.append(f"{flow.id}: successor flow '{flow.successor}' does not exist")

        collected = {step.field for step in flow.steps.values() if step.field}
        for step_id, step in flow.steps.items():
            where = f"{flow.id}.{step_id}"
            if step_id != step.id:
                problems.append(f"{where}: registered under a different id than '{step.id}'")
            if step.field_type == FieldType.AUTO and step.field:
                problems.append(f"{where}: automatic steps cannot collect a field")
            problems.extend(_check_options(step, where, reserved_tokens, max_quick_replies, max_quick_reply_length))
            problems.extend(_check_rule(workflows, flow, step, step.next, "next", collected))
            if step.back is not None:
                problems.extend(_check_rule(workflows, flow, step, step.back, "back", collected))

    cycle = _find_automatic_cycle(workflows)
    if cycle:
        problems.append("automatic transitions form a cycle: " + " -> ".join(f"{f}.{s}" for f, s in cycle))

    if problems:
        raise CatalogDefect(problems)
