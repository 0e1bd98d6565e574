from __future__ import annotations
import asyncio
import base64
import json
import os
import uuid
from abc import ABC, abstractmethod
from typing import (
    Any, AsyncIterator, Dict, List, Optional, Tuple, TypedDict
)

import httpx

from .errors import ExecutionError
from .helpers import clean_run_key, is_success, now_iso
from .model.runs import (
    RUN_COMPLETED, RUN_ERROR, RUN_RUNNING, STEP_ERROR, STEP_SUCCESS,
    RunData, RunStep, StepUpdate,
)

# ----------------------------
# Config & Constants
# ----------------------------
N8N_BASE_URL = os.environ.get(
    "N8N_BASE_URL", "http://localhost:5701"
).rstrip("/")
N8N_BASIC = os.environ.get("N8N_BASIC", "")  # "user:pass"

P_START = os.environ.get(
    "N8N_PAYMENT_START", "/webhook/payment-test/start")
P_CANCEL_REFUND = os.environ.get(
    "N8N_CANCEL_REFUND_START", "/webhook/payment-test/cancel-refund-test")
P_PROGRESS = os.environ.get(
    "N8N_PAYMENT_PROGRESS", "/webhook/payment-test/progress")
P_CANCEL_REFUND_PROGRESS = os.environ.get(
    "N8N_CANCEL_REFUND_PROGRESS",
    "/webhook/payment-test/cancel-refund/progress")
P_EVENTS = os.environ.get(
    "N8N_EVENTS", "/webhook/payment-test/events")
P_CANCEL_REFUND_EVENTS = os.environ.get(
    "N8N_CANCEL_REFUND_EVENTS", "/webhook/payment-test/cancel-refund/events")
P_TEST_CARDS = os.environ.get(
    "N8N_TEST_CARDS", "/webhook/query/get-cards")
P_CANDIDATES = os.environ.get(
    "N8N_CANDIDATES", "/webhook/payment-test/candidates")

FLOW_PAYMENT = "payment"
FLOW_CANCEL_REFUND = "cancelRefund"

PATHS = {
    FLOW_PAYMENT: (P_START, P_PROGRESS, P_EVENTS),
    FLOW_CANCEL_REFUND: (
        P_CANCEL_REFUND, P_CANCEL_REFUND_PROGRESS, P_CANCEL_REFUND_EVENTS
    ),
}


class StartPayload(TypedDict, total=False):
    env: str
    channelId: str
    segment: str
    application: Dict[str, str]
    userId: str
    userName: str
    payment: Dict[str, Any]
    products: List[Dict[str, Any]]
    cardSelectionMode: str
    manualCards: List[Dict[str, Any]]
    cardCount: int
    action: str  # payment | cancel | refund
    scenarios: List[str]
    runMode: str  # payment-only | all
    paymentRef: Dict[str, str]


def flow_for(payload: StartPayload) -> str:
    if payload.get("action") in ("cancel", "refund"):
        return FLOW_CANCEL_REFUND
    return FLOW_PAYMENT


# ----------------------------
# Execution Gateway Interface
# ----------------------------
class ExecutionGateway(ABC):
    @abstractmethod
    async def start(self, payload: StartPayload) -> str:
        """Kick off a run and return its run key.

        Raises ExecutionError when the collaborator refuses the run.
        """

    # ordered step stream; the last item has final=True
    @abstractmethod
    def updates(self, run_key: str) -> AsyncIterator[StepUpdate]: ...

    @abstractmethod
    async def list_candidates(
        self, action: str, channel_id: str,
        date_from: Optional[str] = None, date_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def list_test_cards(self) -> List[Dict[str, Any]]: ...


def _closing_step(status: str, page: Dict[str, Any]) -> RunStep:
    if status == RUN_ERROR:
        return RunStep(
            time=now_iso(), name="run failed", status=STEP_ERROR,
            message=str(page.get("message") or "run reported error"),
        )
    return RunStep(time=now_iso(), name="run finished", status=STEP_SUCCESS)


def page_updates(page: Dict[str, Any]) -> Tuple[List[StepUpdate], bool]:
    """Turn one long-poll page into updates; second item says 'done'."""
    steps = [
        RunStep.from_dict(e) for e in page["events"] if isinstance(e, dict)
    ]
    status = page["status"]
    if status not in (RUN_COMPLETED, RUN_ERROR):
        return [StepUpdate(step) for step in steps], False

    closing = None
    if status == RUN_ERROR and not any(s.status == STEP_ERROR for s in steps):
        closing = _closing_step(status, page)
    elif not steps:
        closing = _closing_step(status, page)

    out = [StepUpdate(step) for step in steps]
    if closing is not None:
        out.append(StepUpdate(closing))
    out[-1].final = True
    out[-1].result = page.get("result")
    return out, True


# ----------------------------
# n8n implementation
# ----------------------------
class N8nGateway(ExecutionGateway):
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = N8N_BASE_URL,
        basic: str = N8N_BASIC,
        wait_sec: int = 25,
        poll_pause: float = 0.2,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.basic = basic
        self.wait_sec = wait_sec
        self.poll_pause = poll_pause
        # run key -> flow, so polling hits the right webhook
        self._flows: Dict[str, str] = {}

    def _headers(self) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
        }
        if self.basic:
            token = base64.b64encode(self.basic.encode()).decode()
            headers["authorization"] = f"Basic {token}"
        return headers

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        # empty or non-JSON bodies are treated as {}
        if resp.status_code in (204, 205) or not resp.content:
            return {}
        try:
            return resp.json()
        except json.JSONDecodeError:
            return {}

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        try:
            resp = await self.http.post(
                f"{self.base_url}{path}", json=body, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise ExecutionError(f"{type(e).__name__} @ {path}: {e}")
        if resp.is_error:
            raise ExecutionError(
                f"HTTP {resp.status_code} {resp.reason_phrase} @ {path}\n"
                f"{resp.text}"
            )
        return self._decode(resp)

    async def _get(self, path: str, query: Dict[str, Any]) -> Any:
        params = {k: str(v) for k, v in query.items() if v is not None}
        resp = await self.http.get(
            f"{self.base_url}{path}", params=params, headers=self._headers(),
            timeout=self.wait_sec + 10,
        )
        resp.raise_for_status()
        return self._decode(resp)

    async def start(self, payload: StartPayload) -> str:
        flow = flow_for(payload)
        res = await self._post(PATHS[flow][0], dict(payload))
        run_key = ""
        if isinstance(res, dict):
            run_key = clean_run_key(str(res.get("runKey") or ""))
        if not run_key:
            raise ExecutionError("collaborator returned no runKey")
        self._flows[run_key] = flow
        return run_key

    async def progress(self, run_key: str) -> RunData:
        flow = self._flows.get(run_key, FLOW_PAYMENT)
        res = await self._get(PATHS[flow][1], {"runKey": run_key})
        return RunData.from_dict(res if isinstance(res, dict) else {})

    async def events_page(self, run_key: str, cursor: int) -> Dict[str, Any]:
        flow = self._flows.get(run_key, FLOW_PAYMENT)
        res = await self._get(PATHS[flow][2], {
            "runKey": run_key, "cursor": cursor, "waitSec": self.wait_sec,
        })
        if not isinstance(res, dict):
            res = {}
        next_cursor = res.get("nextCursor")
        events = res.get("events")
        return {
            "runKey": run_key,
            "status": res.get("status") or RUN_RUNNING,
            "nextCursor": (
                next_cursor if isinstance(next_cursor, int) else cursor
            ),
            "events": events if isinstance(events, list) else [],
            "endTime": res.get("endTime"),
            "result": res.get("result"),
            "message": res.get("message"),
        }

    async def updates(self, run_key: str) -> AsyncIterator[StepUpdate]:
        cursor = 0
        while True:
            try:
                page = await self.events_page(run_key, cursor)
            except httpx.HTTPError as e:
                print("Event stream failed:", e)
                yield StepUpdate(RunStep(
                    time=now_iso(), name="event stream", status=STEP_ERROR,
                    message=str(e),
                ), final=True)
                return
            cursor = page["nextCursor"]
            batch, done = page_updates(page)
            for update in batch:
                yield update
            if done:
                self._flows.pop(run_key, None)
                return
            await asyncio.sleep(self.poll_pause)

    async def list_candidates(
        self, action: str, channel_id: str,
        date_from: Optional[str] = None, date_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = await self._get(P_CANDIDATES, {
            "action": action, "channelId": channel_id,
            "from": date_from, "to": date_to, "limit": limit,
        })
        if not isinstance(rows, list):
            return []
        return [
            r for r in rows
            if isinstance(r, dict) and is_success(r.get("success"))
        ]

    async def list_test_cards(self) -> List[Dict[str, Any]]:
        out = await self._get(P_TEST_CARDS, {})
        if isinstance(out, list):
            return out
        if isinstance(out, dict):
            for k in ("items", "data"):
                if isinstance(out.get(k), list):
                    return out[k]
        return []


# ----------------------------
# Mock implementation
# ----------------------------
MOCK_STEPS = {
    "token": "get token",
    "payment": "send payment request",
    "cancel": "send cancel request",
    "refund": "send refund request",
}


class MockGateway(ExecutionGateway):
    """Plays a canned step sequence per run, no network involved."""

    def __init__(
        self, step_delay: float = 0.5, fail_on: Optional[str] = None
    ) -> None:
        self.step_delay = step_delay
        self.fail_on = fail_on
        self.started: Dict[str, StartPayload] = {}

    async def start(self, payload: StartPayload) -> str:
        run_key = f"mock_{uuid.uuid4().hex}"
        self.started[run_key] = payload
        return run_key

    @staticmethod
    def plan(payload: StartPayload) -> List[str]:
        action = payload.get("action", "payment")
        if action in ("cancel", "refund"):
            return ["token", action]
        if payload.get("runMode") == "all":
            return ["token", "payment", "cancel", "refund"]
        return ["token", "payment"]

    async def updates(self, run_key: str) -> AsyncIterator[StepUpdate]:
        payload = self.started.get(run_key)
        if payload is None:
            yield StepUpdate(RunStep(
                time=now_iso(), name="lookup", status=STEP_ERROR,
                message=f"unknown run {run_key}",
            ), final=True)
            return
        plan = self.plan(payload)
        for seq, kind in enumerate(plan, start=1):
            if self.step_delay:
                await asyncio.sleep(self.step_delay)
            name = MOCK_STEPS[kind]
            failed = kind == self.fail_on
            yield StepUpdate(
                RunStep(
                    seq=seq, time=now_iso(), name=name,
                    status=STEP_ERROR if failed else STEP_SUCCESS,
                    message=f"mock {kind} failed" if failed else None,
                    request={"action": kind, "channelId":
                             payload.get("channelId")},
                ),
                final=failed or seq == len(plan),
                result={"runKey": run_key} if seq == len(plan) else None,
            )
            if failed:
                return

    async def list_candidates(
        self, action: str, channel_id: str,
        date_from: Optional[str] = None, date_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [
            {
                "paymentId": f"mock_pay_{i}",
                "orderId": f"mock_order_{i}",
                "amount": 10,
                "app": "MOCK",
                "channelId": channel_id,
                "createdAt": now_iso(),
                "success": True,
            }
            for i in range(1, 4)
        ]
        return rows[:limit] if limit else rows

    async def list_test_cards(self) -> List[Dict[str, Any]]:
        return [{
            "bank_code": "0000", "ccno": "4508034508034509",
            "e_month": "12", "e_year": "26", "status": 1,
        }]
