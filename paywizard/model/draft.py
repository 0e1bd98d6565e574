from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import ValidationError


class Scenario(str, Enum):
    ALL = "ALL"
    PAYMENT_3DS_OFF = "PAYMENT_3DS_OFF"
    CANCEL = "CANCEL"
    REFUND = "REFUND"


SCENARIO_ORDER = list(Scenario)

ENVIRONMENTS = ("stb", "prp")
CARD_MODES = ("automatic", "manual")
PAYMENT_TYPES = ("CREDITCARD", "DEBITCARD", "PREPAIDCARD")
ACTIONS = ("cancel", "refund")

DEFAULT_CARD_COUNT = 10


def ordered(scenarios: Set[Scenario]) -> List[Scenario]:
    return [s for s in SCENARIO_ORDER if s in scenarios]


def parse_scenario(value: Any) -> Scenario:
    try:
        return Scenario(str(value).upper())
    except ValueError:
        raise ValueError(f"unknown scenario: {value}")


# ----------------------------
# Draft parts
# ----------------------------
@dataclass
class Application:
    applicationName: str = ""
    applicationPassword: str = ""
    secureCode: str = ""
    transactionId: str = ""
    transactionDateTime: str = ""


@dataclass
class ManualCard:
    ccno: str = ""
    e_month: str = ""
    e_year: str = ""
    cvv: str = ""
    bank_code: Optional[str] = None


@dataclass
class PaymentOptions:
    includeMsisdnInOrderID: bool = False
    checkCBBLForMsisdn: bool = True
    checkCBBLForCard: bool = True
    checkFraudStatus: bool = False


@dataclass
class PaymentState:
    userId: str = ""
    userName: str = ""
    threeDOperation: bool = False
    installmentNumber: int = 0
    amount: float = 10
    msisdn: str = ""
    paymentType: str = "CREDITCARD"
    options: PaymentOptions = field(default_factory=PaymentOptions)


@dataclass
class CancelRefund:
    selectedAction: Optional[str] = None  # cancel | refund
    selectedCandidate: Optional[Dict[str, str]] = None  # {"paymentId": ...}

    @property
    def payment_id(self) -> str:
        if not isinstance(self.selectedCandidate, dict):
            return ""
        return str(self.selectedCandidate.get("paymentId") or "")


def _pick(cls, d: Any, name: str) -> Dict[str, Any]:
    if d is None:
        return {}
    if not isinstance(d, dict):
        raise ValidationError({name: "must be an object"})
    names = cls.__dataclass_fields__.keys()
    return {k: v for k, v in d.items() if k in names}


def _number(value: Any, name: str, cast: Callable[[Any], Any] = float):
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError({name: "must be a number"})


# ----------------------------
# WizardData
# ----------------------------
@dataclass
class WizardData:
    scenarios: Set[Scenario] = field(default_factory=set)
    env: Optional[str] = None
    channelId: Optional[str] = None
    application: Application = field(default_factory=Application)
    cardSelectionMode: str = "automatic"
    manualCards: List[ManualCard] = field(default_factory=list)
    cardCount: Optional[int] = DEFAULT_CARD_COUNT
    cancelRefund: CancelRefund = field(default_factory=CancelRefund)
    payment: PaymentState = field(default_factory=PaymentState)

    @property
    def needs_payment(self) -> bool:
        return bool(
            self.scenarios & {Scenario.ALL, Scenario.PAYMENT_3DS_OFF}
        )

    @property
    def needs_candidate(self) -> bool:
        return bool(self.scenarios & {Scenario.CANCEL, Scenario.REFUND})

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["scenarios"] = [s.value for s in ordered(self.scenarios)]
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WizardData":
        data = cls()
        data.scenarios = {parse_scenario(s) for s in d.get("scenarios") or []}
        data.apply(d)
        return data


    def apply(self, patch: Dict[str, Any]) -> None:
        """Merge a partial draft into this one, field block by block.

        Blocks of the wrong shape and non-numeric counts raise
        ValidationError and leave the draft untouched.
        """
        if not isinstance(patch, dict):
            raise ValidationError({"data": "must be an object"})
        changes: Dict[str, Any] = {}
        if "env" in patch:
            changes["env"] = patch["env"]
        if "channelId" in patch:
            changes["channelId"] = patch["channelId"]
        if "application" in patch:
            changes["application"] = Application(**{
                **asdict(self.application),
                **_pick(Application, patch["application"], "application"),
            })
        if "cardSelectionMode" in patch:
            changes["cardSelectionMode"] = patch["cardSelectionMode"]
        if "manualCards" in patch:
            cards = patch["manualCards"] or []
            if not isinstance(cards, list):
                raise ValidationError({"manualCards": "must be a list"})
            changes["manualCards"] = [
                ManualCard(**_pick(ManualCard, c, f"manualCards.{i}"))
                for i, c in enumerate(cards)
            ]
        if "cardCount" in patch:
            changes["cardCount"] = _number(
                patch["cardCount"], "cardCount", int
            )
        if "cancelRefund" in patch:
            changes["cancelRefund"] = CancelRefund(**{
                **asdict(self.cancelRefund),
                **_pick(CancelRefund, patch["cancelRefund"], "cancelRefund"),
            })
        if "payment" in patch:
            p = _pick(PaymentState, patch["payment"], "payment")
            if "amount" in p:
                p["amount"] = _number(p["amount"], "payment.amount")
            if "installmentNumber" in p:
                p["installmentNumber"] = _number(
                    p["installmentNumber"], "payment.installmentNumber", int
                )
            options = PaymentOptions(**{
                **asdict(self.payment.options),
                **_pick(PaymentOptions, p.get("options"), "payment.options"),
            })
            changes["payment"] = PaymentState(
                **{**asdict(self.payment), **p, "options": options}
            )
        for name, value in changes.items():
            setattr(self, name, value)
