# /telepharma/workflows/engine.py

"""
Pure conversation state machine.

Given a contact and one inbound event, the engine looks up the current flow
and step in the catalog, validates the input, follows the step's rules and
returns the new contact plus the messages to send, in order.

All methods are:
- Pure (they work on a deep copy of the contact; the caller's object is untouched)
- Deterministic (same contact, event, time and context = same result)
- Free of I/O: no database, no cache, no message sending, no logging

Terminal actions that need I/O (creating an order, looking one up, filing a
service request) are not executed here. ``advance`` returns them as a
Completion while the state stays on the last step; the caller performs the
side effect and then calls ``complete``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from telepharma.config import strings
from telepharma.models.contact import Contact
from telepharma.models.messages import InboundEvent, OutboundMessage
from telepharma.utils.errors import CatalogDefect, TransitionDepthExceeded
from telepharma.workflows.definitions import (
    Branch,
    FieldType,
    FINISH,
    Flow,
    GREETINGS,
    INLINE_ACTIONS,
    InputMode,
    Option,
    REGISTRATION_FLOW,
    ROOT,
    ROOT_FLOW,
    Rule,
    Step,
    SwitchTo,
    TerminalAction,
    WORKFLOWS,
)
from telepharma.workflows.fields import validate_field
from telepharma.workflows.validator import validate_position


@dataclass(frozen=True)
class Completion:
    """A terminal action handed back to the caller for execution."""
    action: TerminalAction
    flow: str
    step: str
    values: Dict[str, Any]


class EngineResult(TypedDict):
    """Result of one engine call."""
    applied: bool
    reason: Optional[str]
    contact: Contact
    messages: List[OutboundMessage]
    completion: Optional[Completion]


class _Run:
    """Mutable scratchpad for a single engine call."""

    def __init__(self, contact: Contact, now: datetime, context: Optional[Dict[str, Any]], max_depth: int):
        self.contact = contact.model_copy(deep=True)
        self.state = self.contact.conversation_state
        self.state.last_updated = now
        self.now = now
        self.context = context or {}
        self.messages: List[OutboundMessage] = []
        self.max_depth = max_depth
        self.hops = 0

    def hop(self):
        self.hops += 1
        if self.hops > self.max_depth:
            raise TransitionDepthExceeded(
                f"more than {self.max_depth} transitions for one event (at {self.state.flow}.{self.state.step})"
            )

    def say(self, body: str, quick_replies: Optional[List[str]] = None):
        self.messages.append(
            OutboundMessage(recipient=self.contact.phone_number, body=body, quick_replies=quick_replies)
        )

    def result(self, applied: bool, reason: Optional[str] = None, completion: Optional[Completion] = None) -> EngineResult:
        return {
            "applied": applied,
            "reason": reason,
            "contact": self.contact,
            "messages": self.messages,
            "completion": completion,
        }


class FlowEngine:
    def __init__(
        self,
        workflows: Dict[str, Flow] = WORKFLOWS,
        back_token: str = "00",
        abort_token: str = "0",
        optional_sentinel: str = "N/A",
        max_quick_replies: int = 3,
        min_birth_year: int = 1900,
        max_depth: int = 10,
    ):
        self.workflows = workflows
        self.back_token = back_token
        self.abort_token = abort_token
        self.optional_sentinel = optional_sentinel
        self.max_quick_replies = max_quick_replies
        self.min_birth_year = min_birth_year
        self.max_depth = max_depth

    @classmethod
    def from_settings(cls, settings_obj, workflows: Dict[str, Flow] = WORKFLOWS) -> "FlowEngine":
        return cls(
            workflows=workflows,
            back_token=settings_obj.back_token,
            abort_token=settings_obj.abort_token,
            optional_sentinel=settings_obj.optional_sentinel,
            max_quick_replies=settings_obj.max_quick_replies,
            min_birth_year=settings_obj.min_birth_year,
            max_depth=settings_obj.max_transition_depth,
        )

    @property
    def reserved_tokens(self) -> frozenset:
        return frozenset({self.back_token, self.abort_token})

    # ==================== Public API ====================

    def advance(
        self,
        contact: Contact,
        event: InboundEvent,
        now: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """
        Apply one inbound event to a contact's conversation.

        Args:
            contact: The contact as loaded from the repository
            event: The normalized inbound event
            now: Processing time, written to ``last_updated``
            context: Per-contact data computed by the caller (e.g. refill options)

        Returns:
            EngineResult. ``applied`` is False when the input was rejected or
            only re-displayed a menu; the contact still carries the new
            ``last_updated`` in that case.

        Raises:
            CatalogDefect: the stored position or a rule target is not in the catalog
            TransitionDepthExceeded: one event chained more than ``max_depth`` transitions
        """
        run = _Run(contact, now, context, self.max_depth)
        state = run.state

        position = validate_position(self.workflows, state.flow, state.step)
        if not position["is_valid"]:
            raise CatalogDefect(position["message"])

        if state.flow is None:
            return self._advance_root(run, event)

        flow = self.workflows[state.flow]
        step = flow.steps[state.step]
        token = (event.effective_input or "").strip()

        if token == self.back_token and step.back is not None:
            self._go_back(run, flow, step)
            return run.result(True, "back")

        if token == self.abort_token:
            self._to_root(run)
            return run.result(True, "abort")

        return self._accept_input(run, flow, step, event)

    def complete(
        self,
        contact: Contact,
        completion: Completion,
        now: datetime,
        messages: Optional[Sequence[str]] = None,
    ) -> EngineResult:
        """
        Conclude a flow after the caller has executed its terminal action.

        ``messages`` replaces the flow's default completion message when given.
        The contact then moves to the flow's successor (the root by default).
        """
        run = _Run(contact, now, None, self.max_depth)
        flow = self._flow(completion.flow)
        if messages is None:
            messages = self._completion_messages(run, flow, completion.values)
        self._conclude(run, flow, messages)
        return run.result(True, completion.action.value)

    def reset_to_root(self, contact: Contact, now: datetime, notice: Optional[str] = None) -> EngineResult:
        """Discard the current flow and return to the root menu, optionally prefixed by a notice."""
        run = _Run(contact, now, None, self.max_depth)
        self._to_root(run, notice)
        return run.result(True, "reset")

    def render_prompt(
        self,
        contact: Contact,
        flow_id: Optional[str],
        step_id: Optional[str],
        context: Optional[Dict[str, Any]] = None,
        reentry: bool = False,
    ) -> List[OutboundMessage]:
        """Re-derive the prompt for a position from (flow, step, context) alone."""
        if flow_id is None:
            if not contact.registration_complete:
                return [OutboundMessage(recipient=contact.phone_number, body=strings.REGISTRATION_REQUIRED)]
            flow_id = ROOT_FLOW
            step_id = self.workflows[ROOT_FLOW].entry

        flow = self._flow(flow_id)
        step = self._step(flow, step_id)
        options = self.options_for(step, context)

        prompt = step.prompt
        if reentry and flow.reentry_prompt:
            prompt = flow.reentry_prompt
        if step.options_from and not options and step.empty_prompt:
            prompt = step.empty_prompt
        body = prompt.format_map(self._prompt_values(contact))

        quick_replies = None
        if options:
            if self.input_mode_for(step, options) == InputMode.NUMBERED:
                body += "\n" + "\n".join(f"{index}. {option.token}" for index, option in enumerate(options, start=1))
            else:
                quick_replies = [option.token for option in options]

        hints = self._hints(step)
        if hints:
            body += "\n\n" + "\n".join(hints)
        return [OutboundMessage(recipient=contact.phone_number, body=body, quick_replies=quick_replies)]

    def options_for(self, step: Step, context: Optional[Dict[str, Any]] = None) -> Sequence[Option]:
        if step.options_from:
            return tuple((context or {}).get(step.options_from) or ())
        return step.options

    def input_mode_for(self, step: Step, options: Sequence[Option]) -> InputMode:
        """Token steps fall back to numbered input when their options outgrow the reply button cap."""
        if step.input_mode == InputMode.NUMBERED:
            return InputMode.NUMBERED
        if len(options) > min(step.max_options, self.max_quick_replies):
            return InputMode.NUMBERED
        return InputMode.TOKEN

    # ==================== Transitions ====================

    def _advance_root(self, run: _Run, event: InboundEvent) -> EngineResult:
        contact = run.contact
        if not contact.registration_complete:
            # The first message only opens registration; it is not an answer to step 1.
            run.say(strings.WELCOME)
            self._enter_flow(run, REGISTRATION_FLOW)
            return run.result(True, "registration_started")

        token = (event.effective_input or "").strip()
        if token.lower() in GREETINGS:
            run.say(strings.GREETING.format(first_name=contact.first_name))
            self._emit_root_prompt(run)
            return run.result(False, "greeting")

        if token == self.abort_token:
            self._emit_root_prompt(run)
            return run.result(False, "menu")

        root = self.workflows[ROOT_FLOW]
        return self._accept_input(run, root, root.steps[root.entry], event)

    def _accept_input(self, run: _Run, flow: Flow, step: Step, event: InboundEvent) -> EngineResult:
        options = self.options_for(step, run.context)
        result = validate_field(step.field_type, event.effective_input, {
            "options": options,
            "input_mode": self.input_mode_for(step, options),
            "reserved_tokens": self.reserved_tokens,
            "optional_sentinel": self.optional_sentinel,
            "min_birth_year": self.min_birth_year,
            "now": run.now,
            "attachment": event.attachment,
        })

        if not result["is_valid"]:
            run.say(result["message"])
            self._emit_prompt(run, flow, step)
            return run.result(False, result["error_code"])

        accepted = None
        if result["value"] is not None:
            accepted = result["value"].value
        if step.field:
            if result["absent"]:
                run.state.scratch.pop(step.field, None)
            else:
                run.state.scratch[step.field] = result["value"]

        completion = self._follow(run, flow, step.next, accepted)
        return run.result(True, None, completion)

    def _follow(self, run: _Run, flow: Flow, rule: Rule, accepted: Any) -> Optional[Completion]:
        while True:
            run.hop()
            target = self._resolve(rule, run.state.scratch, accepted)

            if isinstance(target, SwitchTo):
                return self._enter_flow(run, target.flow)
            if target == ROOT:
                self._to_root(run)
                return None
            if target == FINISH:
                return self._finish(run, flow)

            step = self._step(flow, target)
            run.state.step = step.id
            self._emit_prompt(run, flow, step)
            if step.field_type != FieldType.AUTO:
                return None
            rule, accepted = step.next, None

    def _enter_flow(self, run: _Run, flow_id: str, reentry: bool = False) -> Optional[Completion]:
        flow = self._flow(flow_id)
        entry = self._step(flow, flow.entry)
        run.state.flow = flow.id
        run.state.step = entry.id
        run.state.scratch = {}
        self._emit_prompt(run, flow, entry, reentry=reentry)
        if entry.field_type == FieldType.AUTO:
            return self._follow(run, flow, entry.next, None)
        return None

    def _go_back(self, run: _Run, flow: Flow, step: Step):
        state = run.state
        target = self._resolve(step.back, state.scratch, None)
        if step.field:
            state.scratch.pop(step.field, None)
        run.hop()

        if isinstance(target, SwitchTo):
            self._enter_flow(run, target.flow)
            return
        if target == ROOT:
            self._to_root(run)
            return

        target_step = self._step(flow, target)
        # The target step is asked again, so its earlier answer is dropped too.
        if target_step.field:
            state.scratch.pop(target_step.field, None)
        state.step = target_step.id
        self._emit_prompt(run, flow, target_step)

    def _finish(self, run: _Run, flow: Flow) -> Optional[Completion]:
        values = run.state.plain_scratch()
        if flow.action is None:
            raise CatalogDefect(f"flow '{flow.id}' finished but declares no terminal action")
        if flow.action not in INLINE_ACTIONS:
            return Completion(action=flow.action, flow=flow.id, step=run.state.step, values=values)

        if flow.action == TerminalAction.COMMIT_PROFILE:
            try:
                run.contact.apply_profile(values)
            except ValueError as e:
                raise CatalogDefect(f"{flow.id} finished without required profile fields: {e}")
        elif flow.action == TerminalAction.COMMIT_ADDRESS:
            run.contact.addresses.home = values["home_address"]

        self._conclude(run, flow, self._completion_messages(run, flow, values))
        return None

    def _conclude(self, run: _Run, flow: Flow, messages: Sequence[str]):
        for body in messages:
            run.say(body)
        if flow.successor:
            run.hop()
            self._enter_flow(run, flow.successor, reentry=True)
        else:
            self._to_root(run)

    def _to_root(self, run: _Run, notice: Optional[str] = None):
        run.state.flow = None
        run.state.step = None
        run.state.scratch = {}
        if notice:
            run.say(notice)
        self._emit_root_prompt(run)

    # ==================== Helpers ====================

    def _resolve(self, rule: Rule, scratch: Dict[str, Any], accepted: Any) -> Rule:
        while isinstance(rule, Branch):
            if rule.on is None:
                key = accepted
            else:
                entry = scratch.get(rule.on)
                key = entry.value if entry is not None else None
            chosen = rule.cases.get(key, rule.default)
            if chosen is None:
                raise CatalogDefect(f"branch on '{rule.on or 'accepted value'}' has no case for {key!r}")
            rule = chosen
        return rule

    def _flow(self, flow_id: str) -> Flow:
        try:
            return self.workflows[flow_id]
        except KeyError:
            raise CatalogDefect(f"unknown flow '{flow_id}'")

    def _step(self, flow: Flow, step_id: Optional[str]) -> Step:
        try:
            return flow.steps[step_id]
        except KeyError:
            raise CatalogDefect(f"unknown step '{step_id}' in flow '{flow.id}'")

    def _emit_prompt(self, run: _Run, flow: Flow, step: Step, reentry: bool = False):
        run.messages.extend(self.render_prompt(run.contact, flow.id, step.id, run.context, reentry))

    def _emit_root_prompt(self, run: _Run):
        run.messages.extend(self.render_prompt(run.contact, None, None))

    def _completion_messages(self, run: _Run, flow: Flow, values: Dict[str, Any]) -> List[str]:
        if not flow.completion_message:
            return []
        return [flow.completion_message.format_map({**values, "first_name": run.contact.first_name or ""})]

    def _prompt_values(self, contact: Contact) -> Dict[str, str]:
        return {
            "first_name": contact.first_name or "",
            "sentinel": self.optional_sentinel,
            "back": self.back_token,
            "abort": self.abort_token,
        }

    def _hints(self, step: Step) -> List[str]:
        if step.back is None:
            return []
        if step.back == ROOT:
            return [strings.HINT_BACK_TO_MENU.format(back=self.back_token)]
        return [strings.HINT_BACK.format(back=self.back_token), strings.HINT_ABORT.format(abort=self.abort_token)]
