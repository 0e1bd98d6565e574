"""Scenario wizard: collects a test-run draft step by step, then runs it.

Transitions are plain functions over (state, draft) so they can be checked
without a running service; ``Wizard`` owns one draft and one run at a time.
"""
from __future__ import annotations
import copy
import dataclasses
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from .errors import ExecutionError, ValidationError
from .gateway import ExecutionGateway, StartPayload
from .helpers import is_blank, new_run_key, now_iso, now_ms, now_ts
from .infra.ratelimit import RateLimiter
from .infra.timings import timeit
from .model.draft import (
    ACTIONS, CARD_MODES, ENVIRONMENTS, PAYMENT_TYPES, Scenario, WizardData,
    ordered,
)
from .model.runs import (
    RUN_COMPLETED, RUN_ERROR, RUN_RUNNING, STEP_ERROR, RunData, RunStep,
    SavedRun, StepUpdate,
)
from .model.runstore import RunStore

DEFAULT_SEGMENT = "segment01"


class WizardState(str, Enum):
    IDLE = "Idle"
    COLLECTING_SCENARIO = "CollectingScenario"
    COLLECTING_ENVIRONMENT = "CollectingEnvironment"
    COLLECTING_APPLICATION = "CollectingApplication"
    COLLECTING_CARDS = "CollectingCards"
    COLLECTING_ACTION_DETAIL = "CollectingActionDetail"
    READY_TO_SUBMIT = "ReadyToSubmit"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


COLLECTING_STEPS = [
    WizardState.COLLECTING_SCENARIO,
    WizardState.COLLECTING_ENVIRONMENT,
    WizardState.COLLECTING_APPLICATION,
    WizardState.COLLECTING_CARDS,
    WizardState.COLLECTING_ACTION_DETAIL,
]

TERMINAL_STATES = (WizardState.COMPLETED, WizardState.FAILED)


# ----------------------------
# Scenario selection
# ----------------------------
def toggle_scenario(
    selected: Set[Scenario], scenario: Scenario
) -> Set[Scenario]:
    if scenario is Scenario.ALL:
        return set() if Scenario.ALL in selected else {Scenario.ALL}
    remaining = set(selected) - {Scenario.ALL}
    if scenario in remaining:
        remaining.discard(scenario)
    else:
        remaining.add(scenario)
    return remaining


def visible_steps(data: WizardData) -> List[WizardState]:
    return [
        s for s in COLLECTING_STEPS
        if s is not WizardState.COLLECTING_ACTION_DETAIL
        or data.needs_candidate
    ]


# ----------------------------
# Per-step validation
# ----------------------------
def _positive_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _check_scenario(data: WizardData) -> Dict[str, str]:
    if not data.scenarios:
        return {"scenarios": "select at least one scenario"}
    return {}


def _check_environment(data: WizardData) -> Dict[str, str]:
    errors = {}
    if data.env not in ENVIRONMENTS:
        errors["env"] = f"must be one of {', '.join(ENVIRONMENTS)}"
    if is_blank(data.channelId):
        errors["channelId"] = "required"
    return errors


def _check_application(data: WizardData) -> Dict[str, str]:
    errors = {}
    for name in ("applicationName", "applicationPassword"):
        if is_blank(getattr(data.application, name)):
            errors[f"application.{name}"] = "required"
    return errors


def _check_cards(data: WizardData) -> Dict[str, str]:
    # cancel/refund-only runs reuse an existing payment, no card data needed
    if not data.needs_payment:
        return {}
    errors = {}
    if data.cardSelectionMode not in CARD_MODES:
        errors["cardSelectionMode"] = (
            f"must be one of {', '.join(CARD_MODES)}"
        )
    elif data.cardSelectionMode == "automatic":
        if data.cardCount is None or data.cardCount < 1:
            errors["cardCount"] = "must be at least 1"
    elif not data.manualCards:
        errors["manualCards"] = "add at least one card"
    else:
        for i, card in enumerate(data.manualCards):
            for name in ("ccno", "e_month", "e_year", "cvv"):
                if is_blank(getattr(card, name)):
                    errors[f"manualCards.{i}.{name}"] = "required"

    payment = data.payment
    if _positive_number(payment.amount) is None:
        errors["payment.amount"] = "must be a positive amount"
    if is_blank(payment.msisdn):
        errors["payment.msisdn"] = "required"
    if str(payment.paymentType).upper() not in PAYMENT_TYPES:
        errors["payment.paymentType"] = (
            f"must be one of {', '.join(PAYMENT_TYPES)}"
        )
    try:
        if int(payment.installmentNumber) < 0:
            raise ValueError
    except (TypeError, ValueError):
        errors["payment.installmentNumber"] = "must be 0 or more"
    return errors


def allowed_actions(data: WizardData) -> List[str]:
    selected = {s.value.lower() for s in data.scenarios}
    return [a for a in ACTIONS if a in selected]


def _check_action_detail(data: WizardData) -> Dict[str, str]:
    if not data.needs_candidate:
        return {}
    errors = {}
    if is_blank(data.cancelRefund.payment_id):
        errors["cancelRefund.selectedCandidate"] = (
            "choose a successful payment to target"
        )
    action = data.cancelRefund.selectedAction
    if action is not None and action not in allowed_actions(data):
        errors["cancelRefund.selectedAction"] = (
            f"must be one of {', '.join(allowed_actions(data))}"
        )
    return errors


CHECKS = {
    WizardState.COLLECTING_SCENARIO: _check_scenario,
    WizardState.COLLECTING_ENVIRONMENT: _check_environment,
    WizardState.COLLECTING_APPLICATION: _check_application,
    WizardState.COLLECTING_CARDS: _check_cards,
    WizardState.COLLECTING_ACTION_DETAIL: _check_action_detail,
}


def validate_step(state: WizardState, data: WizardData) -> Dict[str, str]:
    check = CHECKS.get(state)
    return check(data) if check else {}


def validate_all(data: WizardData) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for step in visible_steps(data):
        errors.update(validate_step(step, data))
    return errors


# ----------------------------
# Transitions
# ----------------------------
def next_state(state: WizardState, data: WizardData) -> WizardState:
    """Advance one step or raise ValidationError; never partial."""
    if state is WizardState.IDLE:
        return WizardState.COLLECTING_SCENARIO
    steps = visible_steps(data)
    if state not in steps:
        raise ValidationError({"state": f"cannot advance from {state.value}"})
    errors = validate_step(state, data)
    if errors:
        raise ValidationError(errors)
    i = steps.index(state)
    if i + 1 < len(steps):
        return steps[i + 1]
    errors = validate_all(data)
    if errors:
        raise ValidationError(errors)
    return WizardState.READY_TO_SUBMIT


def previous_state(state: WizardState, data: WizardData) -> WizardState:
    steps = visible_steps(data)
    if state is WizardState.READY_TO_SUBMIT:
        return steps[-1]
    if state not in steps:
        raise ValidationError({"state": f"cannot go back from {state.value}"})
    i = steps.index(state)
    return steps[max(0, i - 1)]


def build_start_payload(
    data: WizardData, ts_ms: Optional[int] = None
) -> StartPayload:
    errors = validate_all(data)
    if errors:
        raise ValidationError(errors)
    ts_ms = now_ms() if ts_ms is None else ts_ms
    scenarios = data.scenarios

    run_mode = "payment-only"
    if scenarios & {Scenario.ALL, Scenario.CANCEL, Scenario.REFUND}:
        run_mode = "all"

    actions = allowed_actions(data)
    if data.cancelRefund.selectedAction in actions:
        action = data.cancelRefund.selectedAction
    elif actions:
        action = actions[0]
    else:
        # ALL starts with the payment; the collaborator chains the rest
        action = "payment"

    app = data.application
    payment = data.payment
    three_d = bool(payment.threeDOperation)
    if Scenario.PAYMENT_3DS_OFF in scenarios:
        three_d = False

    payload: Dict[str, Any] = {
        "env": data.env,
        "channelId": data.channelId,
        "segment": DEFAULT_SEGMENT,
        "application": {
            "applicationName": app.applicationName,
            "applicationPassword": app.applicationPassword,
            "secureCode": app.secureCode,
            "transactionId": app.transactionId or f"TXN_{ts_ms}",
            "transactionDateTime": (
                app.transactionDateTime or now_iso()
            ),
        },
        "userId": payment.userId or None,
        "userName": payment.userName or None,
        "payment": {
            "paymentType": str(payment.paymentType).lower(),
            "threeDOperation": three_d,
            "installmentNumber": int(payment.installmentNumber or 0),
            "options": dataclasses.asdict(payment.options),
        },
        "cardSelectionMode": data.cardSelectionMode,
        "action": action,
        "scenarios": [s.value for s in ordered(scenarios)],
        "runMode": run_mode,
    }
    amount = _positive_number(payment.amount)
    if amount is not None:
        payload["products"] = [{
            "amount": amount,
            "msisdn": payment.msisdn or None,
        }]
    if data.cardSelectionMode == "manual":
        payload["manualCards"] = [
            {k: v for k, v in dataclasses.asdict(c).items() if v is not None}
            for c in data.manualCards
        ]
    else:
        payload["cardCount"] = data.cardCount
    if data.cancelRefund.payment_id:
        payload["paymentRef"] = {"paymentId": data.cancelRefund.payment_id}

    return {k: v for k, v in payload.items() if v is not None}


# ----------------------------
# Wizard
# ----------------------------
class Wizard:
    def __init__(
        self,
        limiter: RateLimiter,
        gateway: ExecutionGateway,
        store: RunStore,
        wizard_id: Optional[str] = None,
    ) -> None:
        self.id = wizard_id or uuid.uuid4().hex
        self.limiter = limiter
        self.gateway = gateway
        self.store = store
        self._clear()

    def _clear(self) -> None:
        self.state = WizardState.IDLE
        self.data = WizardData()
        self.payload: Optional[StartPayload] = None
        self.run: Optional[RunData] = None
        self.run_key: Optional[str] = None
        self.failure: Optional[ExecutionError] = None
        self._submitting = False
        self._started_ts: Optional[float] = None
        self._ended_ts: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _require(self, *states: WizardState) -> None:
        if self._submitting:
            raise ValidationError({"state": "submission in progress"})
        if self.state not in states:
            raise ValidationError(
                {"state": f"not allowed in {self.state.value}"}
            )

    # ---- collecting
    def open(self) -> WizardState:
        self._require(WizardState.IDLE)
        self.state = next_state(self.state, self.data)
        return self.state

    def reset(self) -> WizardState:
        # the external run, if any, keeps going; we only stop tracking it
        if self._submitting:
            raise ValidationError({"state": "submission in progress"})
        self._clear()
        return self.open()

    def toggle(self, scenario: Scenario) -> Set[Scenario]:
        self._require(WizardState.COLLECTING_SCENARIO)
        self.data.scenarios = toggle_scenario(self.data.scenarios, scenario)
        return self.data.scenarios

    def update(self, patch: Dict[str, Any]) -> WizardData:
        self._require(*COLLECTING_STEPS)
        if "scenarios" in patch:
            raise ValidationError(
                {"scenarios": "toggle scenarios one at a time"}
            )
        try:
            self.data.apply(patch)
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError({"data": str(e)})
        return self.data

    def next(self) -> WizardState:
        self._require(*COLLECTING_STEPS)
        target = next_state(self.state, self.data)
        if target is WizardState.READY_TO_SUBMIT:
            self.payload = build_start_payload(self.data)
        self.state = target
        return self.state

    def back(self) -> WizardState:
        self._require(*COLLECTING_STEPS, WizardState.READY_TO_SUBMIT)
        self.state = previous_state(self.state, self.data)
        self.payload = None
        return self.state

    # ---- execution
    async def submit(self) -> str:
        if (self.state is not WizardState.READY_TO_SUBMIT
                or self.payload is None or self._submitting):
            raise ValidationError(
                {"state": f"not ready to submit ({self.state.value})"}
            )
        payload = self.payload
        self._submitting = True
        try:
            async with timeit("gateway.start"):
                run_key = await self.limiter.execute(
                    lambda: self.gateway.start(payload)
                )
        except ExecutionError as e:
            # a refused start is this run's first and only terminal signal
            self._begin(new_run_key(), payload)
            await self.apply(StepUpdate(RunStep(
                time=now_iso(), name="start run", status=STEP_ERROR,
                message=e.message,
            ), final=True))
            raise
        finally:
            self._submitting = False
        if (self.state is not WizardState.READY_TO_SUBMIT
                or self.payload is not payload):
            raise ValidationError({"state": "draft changed while submitting"})
        self._begin(run_key, payload)
        return run_key

    def _begin(self, run_key: str, payload: StartPayload) -> None:
        self.run_key = run_key
        self._started_ts = now_ts()
        context = None
        base = getattr(self.gateway, "base_url", None)
        if base:
            context = {"base": base}
        self.run = RunData(
            status=RUN_RUNNING,
            startTime=now_iso(),
            params={"scenarios": payload.get("scenarios", [])},
            context=context,
        )
        self.state = WizardState.RUNNING

    async def apply(self, update: StepUpdate) -> bool:
        """Record one streamed step; False when it was ignored."""
        if self.state is not WizardState.RUNNING or self.run is None:
            return False
        step = update.step
        last = self.run.last_seq
        if step.seq is None:
            step = dataclasses.replace(step, seq=last + 1)
        elif step.seq <= last:
            return False
        self.run.steps.append(step)

        if step.status == STEP_ERROR:
            failure = ExecutionError(
                step.message or f"{step.name} failed", step.name
            )
            await self._terminate(WizardState.FAILED, update.result, failure)
        elif update.final:
            await self._terminate(WizardState.COMPLETED, update.result)
        return True

    async def _terminate(
        self, state: WizardState, result: Any,
        failure: Optional[ExecutionError] = None,
    ) -> None:
        self.state = state
        self.failure = failure
        self.run.status = (
            RUN_COMPLETED if state is WizardState.COMPLETED else RUN_ERROR
        )
        self.run.endTime = now_iso()
        self._ended_ts = now_ts()
        if result is not None:
            self.run.result = result
        saved = SavedRun(
            runKey=self.run_key or new_run_key(),
            savedAt=now_iso(),
            data=copy.deepcopy(self.run),
        )
        async with timeit("runstore.append"):
            await self.store.append(saved)

    async def follow(self, updates: AsyncIterator[StepUpdate]) -> RunData:
        message = "event stream ended without a terminal step"
        try:
            async for update in updates:
                await self.apply(update)
                if self.is_terminal:
                    break
        except Exception as e:
            # cancellation is not an Exception and still propagates
            print("Step stream failed:", repr(e))
            message = f"event stream failed: {e}"
        finally:
            aclose = getattr(updates, "aclose", None)
            if aclose is not None:
                await aclose()
        if self.state is WizardState.RUNNING:
            await self.apply(StepUpdate(RunStep(
                time=now_iso(), name="event stream", status=STEP_ERROR,
                message=message,
            ), final=True))
        return self.run

    async def execute(self) -> RunData:
        run_key = await self.submit()
        return await self.follow(self.gateway.updates(run_key))

    # ---- views
    def elapsed_ms(self) -> Optional[int]:
        if self._started_ts is None:
            return None
        end = self._ended_ts if self._ended_ts is not None else now_ts()
        return int(max(0.0, end - self._started_ts) * 1000)

    def view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "steps": [s.value for s in visible_steps(self.data)],
            "data": self.data.to_dict(),
            "payload": self.payload,
            "runKey": self.run_key,
            "run": self.run.to_dict() if self.run else None,
            "error": self.failure.message if self.failure else None,
            "elapsedMs": self.elapsed_ms(),
        }
