# backend/tests/unit/test_catalog.py
import dataclasses

import pytest

from telepharma.utils.errors import CatalogDefect
from telepharma.workflows.definitions import (
    Branch,
    FieldType,
    FINISH,
    InputMode,
    Option,
    ORDER_FLOW,
    REGISTRATION_FLOW,
    ROOT_FLOW,
    Step,
    SwitchTo,
    WORKFLOWS,
)
from telepharma.workflows.fields import validate_field
from telepharma.workflows.validator import iter_rule_leaves, validate_catalog, validate_position

RESERVED = frozenset({"00", "0"})


def with_step(flow_id, step):
    """A copy of the shipped catalog with one step replaced or added."""
    flow = WORKFLOWS[flow_id]
    steps = {**flow.steps, step.id: step}
    return {**WORKFLOWS, flow_id: dataclasses.replace(flow, steps=steps)}


def problems_of(workflows):
    with pytest.raises(CatalogDefect) as exc_info:
        validate_catalog(workflows, RESERVED)
    return exc_info.value.problems


def test_shipped_catalog_is_valid():
    validate_catalog(WORKFLOWS, RESERVED, max_quick_replies=3, max_quick_reply_length=20)


def test_every_quick_reply_fits_the_channel():
    for flow in WORKFLOWS.values():
        for step in flow.steps.values():
            if step.input_mode == InputMode.TOKEN and step.options:
                assert len(step.options) <= 3, f"{flow.id}.{step.id}"
                assert all(len(o.token) <= 20 for o in step.options), f"{flow.id}.{step.id}"


def test_missing_step_target_is_reported():
    broken = with_step(REGISTRATION_FLOW, dataclasses.replace(
        WORKFLOWS[REGISTRATION_FLOW].steps["SURNAME"], next="MIDDLE_NAME"
    ))
    assert any("missing step 'MIDDLE_NAME'" in p for p in problems_of(broken))


def test_unknown_flow_switch_is_reported():
    menu = WORKFLOWS[ROOT_FLOW].steps["MENU"]
    broken = with_step(ROOT_FLOW, dataclasses.replace(
        menu, next=Branch(on=None, cases={**menu.next.cases, "MORE_OPTIONS": SwitchTo("LOYALTY")})
    ))
    assert any("unknown flow 'LOYALTY'" in p for p in problems_of(broken))


def test_reserved_option_token_is_reported():
    broken = with_step(ORDER_FLOW, dataclasses.replace(
        WORKFLOWS[ORDER_FLOW].steps["DELIVERY_METHOD"],
        options=(Option("Delivery", "DELIVERY"), Option("0", "PICKUP")),
    ))
    assert any("reserved navigation token" in p for p in problems_of(broken))


def test_token_step_over_the_reply_cap_is_reported():
    broken = with_step(ORDER_FLOW, dataclasses.replace(
        WORKFLOWS[ORDER_FLOW].steps["DELIVERY_METHOD"],
        options=tuple(Option(f"Option {i}", f"O{i}") for i in range(4)),
    ))
    assert any("quick reply cap" in p for p in problems_of(broken))


def test_long_token_is_reported():
    broken = with_step(ORDER_FLOW, dataclasses.replace(
        WORKFLOWS[ORDER_FLOW].steps["DELIVERY_METHOD"],
        options=(Option("Deliver to my registered address", "DELIVERY"), Option("Pickup", "PICKUP")),
    ))
    assert any("longer than 20 characters" in p for p in problems_of(broken))


def test_branch_on_uncollected_field_is_reported():
    broken = with_step(ORDER_FLOW, dataclasses.replace(
        WORKFLOWS[ORDER_FLOW].steps["DELIVERY_ADDRESS_TYPE"],
        back=Branch(on="loyalty_tier", cases={"GOLD": "DELIVERY_METHOD"}),
    ))
    assert any("'loyalty_tier' which no step collects" in p for p in problems_of(broken))


def test_back_rule_cannot_finish():
    broken = with_step(ORDER_FLOW, dataclasses.replace(
        WORKFLOWS[ORDER_FLOW].steps["DELIVERY_ADDRESS_TYPE"], back=FINISH
    ))
    assert any("back rule cannot finish" in p for p in problems_of(broken))


def test_automatic_cycle_is_reported():
    flow = WORKFLOWS[ORDER_FLOW]
    looping = dataclasses.replace(flow, steps={
        **flow.steps,
        "PRESCRIPTION_RECEIVED": dataclasses.replace(flow.steps["PRESCRIPTION_RECEIVED"], next="DOUBLE_CHECK"),
        "DOUBLE_CHECK": Step(id="DOUBLE_CHECK", prompt="Checking...", field_type=FieldType.AUTO,
                             next="PRESCRIPTION_RECEIVED"),
    })
    problems = problems_of({**WORKFLOWS, ORDER_FLOW: looping})
    assert any("cycle" in p and "DOUBLE_CHECK" in p for p in problems)


def test_all_problems_are_listed_together():
    catalog = {k: v for k, v in WORKFLOWS.items() if k != REGISTRATION_FLOW}
    catalog[ORDER_FLOW] = dataclasses.replace(WORKFLOWS[ORDER_FLOW], entry="NOWHERE")
    problems = problems_of(catalog)
    assert any("no 'REGISTRATION' flow" in p for p in problems)
    assert any("entry step 'NOWHERE'" in p for p in problems)


@pytest.mark.parametrize("flow_id, step_id, valid", [
    (None, None, True),
    (None, "MENU", False),
    ("PLACE_ORDER", "DELIVERY_METHOD", True),
    ("PLACE_ORDER", "CHECKOUT", False),
    ("LOYALTY", "START", False),
    ("PLACE_ORDER", None, False),
])
def test_validate_position(flow_id, step_id, valid):
    assert validate_position(WORKFLOWS, flow_id, step_id)["is_valid"] is valid


def test_rule_leaves_walk_nested_branches():
    back = WORKFLOWS[ORDER_FLOW].steps["DELIVERY_METHOD"].back
    assert set(iter_rule_leaves(back)) == {"OTC_MEDICATION_LIST", "NEW_PRESCRIPTION_FOR", "SELECT_REFILL"}


CHOICE_STEPS = [
    (flow.id, step)
    for flow in WORKFLOWS.values()
    for step in flow.steps.values()
    if step.field_type == FieldType.CHOICE and step.options and not step.options_from
]


def choice_context(engine, step):
    options = engine.options_for(step)
    return {
        "options": options,
        "input_mode": engine.input_mode_for(step, options),
        "reserved_tokens": engine.reserved_tokens,
        "optional_sentinel": engine.optional_sentinel,
        "min_birth_year": engine.min_birth_year,
        "now": None,
        "attachment": None,
    }


@pytest.mark.parametrize("flow_id, step", CHOICE_STEPS, ids=[f"{f}.{s.id}" for f, s in CHOICE_STEPS])
def test_choice_steps_accept_exactly_their_declared_options(engine, flow_id, step):
    ctx = choice_context(engine, step)
    options = ctx["options"]
    if ctx["input_mode"] == InputMode.NUMBERED:
        accepted = [str(index) for index in range(1, len(options) + 1)]
        outside = ["0", str(len(options) + 1), options[0].token, "1.5", "²"]
    else:
        accepted = [option.token for option in options]
        outside = ["1", options[0].token.lower() + "!", options[0].token.upper() + "S"]

    for raw, option in zip(accepted, options):
        result = validate_field(step.field_type, raw, ctx)
        assert result["is_valid"], raw
        assert result["value"].value == option.value

    if len(accepted) > 1:
        outside.append(" ".join(accepted))
    for raw in sorted(engine.reserved_tokens) + outside + [""]:
        assert not validate_field(step.field_type, raw, ctx)["is_valid"], raw
