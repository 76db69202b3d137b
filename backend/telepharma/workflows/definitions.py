# /telepharma/workflows/definitions.py

"""
Flow catalog as pure data.

Every conversation the assistant can hold is a Flow: a named graph of Steps.
Each Step declares:
- prompt: what is sent when the step is entered
- field / field_type: which scratch value it collects and how it is parsed
- options / input_mode: the accepted choices for enumerated steps
- next: the rule that picks the following step once input is accepted
- back: the rule followed on the back token (None means back is not offered)

Rules are data, never code:
- a step id inside the same flow
- FINISH (run the flow's terminal action) or ROOT (return to the main menu)
- SwitchTo(flow) to start another flow
- Branch(on, cases, default) to choose by a collected value

The main menu is itself a flow (ROOT_FLOW) but a contact sitting on it is
stored with ``flow=None``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from telepharma.config import strings


class FieldType(str, Enum):
    TEXT = "text"
    DATE = "date"
    CHOICE = "choice"
    OPTIONAL = "optional"
    PRESCRIPTION = "prescription"
    AUTO = "auto"  # no input; the step's prompt is sent and `next` is followed at once


class InputMode(str, Enum):
    TOKEN = "token"
    NUMBERED = "numbered"


class TerminalAction(str, Enum):
    COMMIT_PROFILE = "commit_profile"
    COMMIT_ADDRESS = "commit_address"
    FINALIZE_ORDER = "finalize_order"
    LOOKUP_ORDER_STATUS = "lookup_order_status"
    SUBMIT_SERVICE_REQUEST = "submit_service_request"


# Actions the engine applies itself; the rest need I/O and are handed back.
INLINE_ACTIONS = frozenset({TerminalAction.COMMIT_PROFILE, TerminalAction.COMMIT_ADDRESS})

FINISH = "__finish__"
ROOT = "__root__"


@dataclass(frozen=True)
class SwitchTo:
    flow: str


@dataclass(frozen=True)
class Branch:
    """Chooses a rule by a scratch value; ``on=None`` means the value just accepted."""
    on: Optional[str]
    cases: Dict[str, "Rule"]
    default: Optional["Rule"] = None


Rule = Union[str, SwitchTo, Branch]


@dataclass(frozen=True)
class Option:
    token: str
    value: str


@dataclass(frozen=True)
class Step:
    id: str
    prompt: str
    field: Optional[str] = None
    field_type: FieldType = FieldType.TEXT
    options: Tuple[Option, ...] = ()
    options_from: Optional[str] = None  # context key holding options computed per contact
    empty_prompt: Optional[str] = None  # sent instead of `prompt` when options_from yields nothing
    input_mode: InputMode = InputMode.TOKEN
    max_options: int = 3
    next: Rule = FINISH
    back: Optional[Rule] = None


@dataclass(frozen=True)
class Flow:
    id: str
    entry: str
    steps: Dict[str, Step]
    action: Optional[TerminalAction] = None
    successor: Optional[str] = None  # flow started after the terminal action; None returns to the root
    reentry_prompt: Optional[str] = None  # replaces the entry prompt when re-entered as a successor
    completion_message: Optional[str] = None


def _flow(flow_id: str, entry: str, steps, **kwargs) -> Flow:
    return Flow(id=flow_id, entry=entry, steps={s.id: s for s in steps}, **kwargs)


ROOT_FLOW = "MAIN_MENU"
REGISTRATION_FLOW = "REGISTRATION"
ORDER_FLOW = "PLACE_ORDER"

GREETINGS = frozenset({"hi", "hello", "hey", "good morning", "good afternoon", "good evening"})

# Flows whose completion records a ServiceRequest of the same name.
SERVICE_REQUEST_FLOWS = ("PHARMACY_CONSULTATION", "DOCTOR_CONSULTATION", "GENERAL_ENQUIRY")


WORKFLOWS: Dict[str, Flow] = {
    ROOT_FLOW: _flow(ROOT_FLOW, "MENU", [
        Step(
            id="MENU",
            prompt=strings.MAIN_MENU,
            field_type=FieldType.CHOICE,
            options=(
                Option("Place an Order", ORDER_FLOW),
                Option("View Order Status", "VIEW_ORDER_STATUS"),
                Option("More", "MORE_OPTIONS"),
            ),
            next=Branch(on=None, cases={
                ORDER_FLOW: SwitchTo(ORDER_FLOW),
                "VIEW_ORDER_STATUS": SwitchTo("VIEW_ORDER_STATUS"),
                "MORE_OPTIONS": SwitchTo("MORE_OPTIONS"),
            }),
        ),
    ]),

    "MORE_OPTIONS": _flow("MORE_OPTIONS", "MORE", [
        Step(
            id="MORE",
            prompt=strings.MORE_OPTIONS,
            field_type=FieldType.CHOICE,
            input_mode=InputMode.NUMBERED,
            options=(
                Option("Pharmacy Consultation", "PHARMACY_CONSULTATION"),
                Option("Doctor Consultation", "DOCTOR_CONSULTATION"),
                Option("General Enquiry", "GENERAL_ENQUIRY"),
                Option("Update Delivery Address", "UPDATE_ADDRESS"),
            ),
            max_options=10,
            next=Branch(on=None, cases={
                "PHARMACY_CONSULTATION": SwitchTo("PHARMACY_CONSULTATION"),
                "DOCTOR_CONSULTATION": SwitchTo("DOCTOR_CONSULTATION"),
                "GENERAL_ENQUIRY": SwitchTo("GENERAL_ENQUIRY"),
                "UPDATE_ADDRESS": SwitchTo("UPDATE_ADDRESS"),
            }),
            back=ROOT,
        ),
    ]),

    REGISTRATION_FLOW: _flow(REGISTRATION_FLOW, "FIRST_NAME", [
        Step(id="FIRST_NAME", prompt=strings.REG_FIRST_NAME, field="first_name", next="SURNAME"),
        Step(id="SURNAME", prompt=strings.REG_SURNAME, field="surname", next="DATE_OF_BIRTH", back="FIRST_NAME"),
        Step(
            id="DATE_OF_BIRTH",
            prompt=strings.REG_DATE_OF_BIRTH,
            field="date_of_birth",
            field_type=FieldType.DATE,
            next="GENDER",
            back="SURNAME",
        ),
        Step(
            id="GENDER",
            prompt=strings.REG_GENDER,
            field="gender",
            field_type=FieldType.CHOICE,
            input_mode=InputMode.NUMBERED,
            options=(Option("Male", "MALE"), Option("Female", "FEMALE")),
            next="MEDICAL_AID_PROVIDER",
            back="DATE_OF_BIRTH",
        ),
        Step(
            id="MEDICAL_AID_PROVIDER",
            prompt=strings.REG_MEDICAL_AID_PROVIDER,
            field="medical_aid_provider",
            field_type=FieldType.CHOICE,
            input_mode=InputMode.NUMBERED,
            options=(
                Option("BOMAID", "BOMAID"),
                Option("PULA", "PULA"),
                Option("BPOMAS", "BPOMAS"),
                Option("BOTSOGO", "BOTSOGO"),
            ),
            max_options=10,
            next="MEDICAL_AID_NUMBER",
            back="GENDER",
        ),
        Step(
            id="MEDICAL_AID_NUMBER",
            prompt=strings.REG_MEDICAL_AID_NUMBER,
            field="medical_aid_number",
            next="SCHEME",
            back="MEDICAL_AID_PROVIDER",
        ),
        Step(id="SCHEME", prompt=strings.REG_SCHEME, field="scheme", next="DEPENDENT_NUMBER", back="MEDICAL_AID_NUMBER"),
        Step(
            id="DEPENDENT_NUMBER",
            prompt=strings.REG_DEPENDENT_NUMBER,
            field="dependent_number",
            field_type=FieldType.OPTIONAL,
            next=FINISH,
            back="SCHEME",
        ),
    ], action=TerminalAction.COMMIT_PROFILE, completion_message=strings.REGISTRATION_COMPLETE),

    ORDER_FLOW: _flow(ORDER_FLOW, "MEDICATION_TYPE", [
        Step(
            id="MEDICATION_TYPE",
            prompt=strings.MEDICATION_TYPE,
            field="medication_type",
            field_type=FieldType.CHOICE,
            options=(Option("Prescription", "PRESCRIPTION"), Option("OTC", "OTC")),
            next=Branch(on=None, cases={"PRESCRIPTION": "PRESCRIPTION_OPTIONS", "OTC": "OTC_MEDICATION_LIST"}),
            back=ROOT,
        ),
        Step(
            id="PRESCRIPTION_OPTIONS",
            prompt=strings.PRESCRIPTION_OPTIONS,
            field="prescription_option",
            field_type=FieldType.CHOICE,
            options=(Option("Prescription Refill", "REFILL"), Option("New Prescription", "NEW")),
            next=Branch(on=None, cases={"REFILL": "SELECT_REFILL", "NEW": "UPLOAD_PRESCRIPTION"}),
            back="MEDICATION_TYPE",
        ),
        Step(
            id="SELECT_REFILL",
            prompt=strings.SELECT_REFILL,
            field="refill_of",
            field_type=FieldType.CHOICE,
            input_mode=InputMode.NUMBERED,
            options_from="refill_options",
            empty_prompt=strings.SELECT_REFILL_EMPTY,
            max_options=10,
            next="DELIVERY_METHOD",
            back="PRESCRIPTION_OPTIONS",
        ),
        Step(
            id="UPLOAD_PRESCRIPTION",
            prompt=strings.UPLOAD_PRESCRIPTION,
            field="prescription",
            field_type=FieldType.PRESCRIPTION,
            next="PRESCRIPTION_RECEIVED",
            back="PRESCRIPTION_OPTIONS",
        ),
        Step(
            id="PRESCRIPTION_RECEIVED",
            prompt=strings.PRESCRIPTION_RECEIVED,
            field_type=FieldType.AUTO,
            next="NEW_PRESCRIPTION_FOR",
        ),
        Step(
            id="NEW_PRESCRIPTION_FOR",
            prompt=strings.NEW_PRESCRIPTION_FOR,
            field="prescription_for",
            field_type=FieldType.CHOICE,
            options=(Option("Principal Member", "PRINCIPAL"), Option("Dependant", "DEPENDANT")),
            next="DELIVERY_METHOD",
            back="UPLOAD_PRESCRIPTION",
        ),
        Step(
            id="OTC_MEDICATION_LIST",
            prompt=strings.OTC_MEDICATION_LIST,
            field="medications",
            next="DELIVERY_METHOD",
            back="MEDICATION_TYPE",
        ),
        Step(
            id="DELIVERY_METHOD",
            prompt=strings.DELIVERY_METHOD,
            field="delivery_method",
            field_type=FieldType.CHOICE,
            options=(Option("Delivery", "DELIVERY"), Option("Pickup", "PICKUP")),
            next=Branch(on=None, cases={"PICKUP": FINISH, "DELIVERY": "DELIVERY_ADDRESS_TYPE"}),
            back=Branch(
                on="medication_type",
                cases={"OTC": "OTC_MEDICATION_LIST"},
                default=Branch(on="prescription_option", cases={"NEW": "NEW_PRESCRIPTION_FOR"}, default="SELECT_REFILL"),
            ),
        ),
        Step(
            id="DELIVERY_ADDRESS_TYPE",
            prompt=strings.DELIVERY_ADDRESS_TYPE,
            field="address_type",
            field_type=FieldType.CHOICE,
            options=(Option("Work", "WORK"), Option("Home", "HOME")),
            next=Branch(on=None, cases={"WORK": "ENTER_WORK_ADDRESS", "HOME": "ENTER_HOME_ADDRESS"}),
            back="DELIVERY_METHOD",
        ),
        Step(
            id="ENTER_WORK_ADDRESS",
            prompt=strings.ENTER_WORK_ADDRESS,
            field="delivery_address",
            next=FINISH,
            back="DELIVERY_ADDRESS_TYPE",
        ),
        Step(
            id="ENTER_HOME_ADDRESS",
            prompt=strings.ENTER_HOME_ADDRESS,
            field="delivery_address",
            next=FINISH,
            back="DELIVERY_ADDRESS_TYPE",
        ),
    ], action=TerminalAction.FINALIZE_ORDER),

    "VIEW_ORDER_STATUS": _flow("VIEW_ORDER_STATUS", "ENTER_ORDER_NUMBER", [
        Step(
            id="ENTER_ORDER_NUMBER",
            prompt=strings.ENTER_ORDER_NUMBER,
            field="order_number",
            next=FINISH,
            back=ROOT,
        ),
    ], action=TerminalAction.LOOKUP_ORDER_STATUS, successor="VIEW_ORDER_STATUS",
        reentry_prompt=strings.ANOTHER_ORDER_NUMBER),

    "PHARMACY_CONSULTATION": _flow("PHARMACY_CONSULTATION", "ENTER_ISSUE", [
        Step(id="ENTER_ISSUE", prompt=strings.ENTER_PHARMACY_ISSUE, field="notes", next=FINISH, back=ROOT),
    ], action=TerminalAction.SUBMIT_SERVICE_REQUEST, completion_message=strings.PHARMACY_CONSULTATION_RECEIVED),

    "DOCTOR_CONSULTATION": _flow("DOCTOR_CONSULTATION", "ENTER_ISSUE", [
        Step(id="ENTER_ISSUE", prompt=strings.ENTER_DOCTOR_ISSUE, field="notes", next=FINISH, back=ROOT),
    ], action=TerminalAction.SUBMIT_SERVICE_REQUEST, completion_message=strings.DOCTOR_CONSULTATION_RECEIVED),

    "GENERAL_ENQUIRY": _flow("GENERAL_ENQUIRY", "ENTER_ENQUIRY", [
        Step(id="ENTER_ENQUIRY", prompt=strings.ENTER_ENQUIRY, field="notes", next=FINISH, back=ROOT),
    ], action=TerminalAction.SUBMIT_SERVICE_REQUEST, completion_message=strings.GENERAL_ENQUIRY_RECEIVED),

    "UPDATE_ADDRESS": _flow("UPDATE_ADDRESS", "ENTER_DEFAULT_ADDRESS", [
        Step(id="ENTER_DEFAULT_ADDRESS", prompt=strings.ENTER_DEFAULT_ADDRESS, field="home_address", next=FINISH, back=ROOT),
    ], action=TerminalAction.COMMIT_ADDRESS, completion_message=strings.ADDRESS_UPDATED),
}
