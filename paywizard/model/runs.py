from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# step statuses
STEP_RUNNING = "running"
STEP_SUCCESS = "success"
STEP_ERROR = "error"

# run statuses
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_ERROR = "error"


@dataclass
class RunStep:
    time: str
    name: str
    status: str  # running | success | error
    seq: Optional[int] = None
    message: Optional[str] = None
    request: Any = None
    response: Any = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RunStep":
        seq = d.get("seq")
        return cls(
            seq=int(seq) if seq is not None else None,
            time=str(d.get("time") or ""),
            name=str(d.get("name") or ""),
            status=str(d.get("status") or STEP_RUNNING),
            message=d.get("message"),
            request=d.get("request"),
            response=d.get("response"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "seq": self.seq,
            "time": self.time,
            "name": self.name,
            "status": self.status,
        }
        if self.message is not None:
            out["message"] = self.message
        if self.request is not None:
            out["request"] = self.request
        if self.response is not None:
            out["response"] = self.response
        return out


@dataclass
class StepUpdate:
    """One item of the collaborator's step stream.

    ``final`` marks the update that carries the run's terminal signal.
    """
    step: RunStep
    final: bool = False
    result: Any = None


@dataclass
class RunData:
    status: str
    startTime: str
    endTime: Optional[str] = None
    steps: List[RunStep] = field(default_factory=list)
    result: Any = None
    params: Any = None
    context: Optional[Dict[str, str]] = None

    @property
    def last_seq(self) -> int:
        if not self.steps:
            return 0
        return self.steps[-1].seq or 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RunData":
        return cls(
            status=str(d.get("status") or RUN_RUNNING),
            startTime=str(d.get("startTime") or ""),
            endTime=d.get("endTime"),
            steps=[RunStep.from_dict(s) for s in d.get("steps") or []],
            result=d.get("result"),
            params=d.get("params"),
            context=d.get("context"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status,
            "startTime": self.startTime,
            "endTime": self.endTime,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.result is not None:
            out["result"] = self.result
        if self.params is not None:
            out["params"] = self.params
        if self.context is not None:
            out["context"] = self.context
        return out


@dataclass
class SavedRun:
    runKey: str
    savedAt: str
    data: RunData

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SavedRun":
        if not isinstance(d, dict) or not isinstance(d.get("data"), dict):
            raise ValueError("saved run must be an object with data")
        return cls(
            runKey=str(d["runKey"]),
            savedAt=str(d["savedAt"]),
            data=RunData.from_dict(d["data"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runKey": self.runKey,
            "savedAt": self.savedAt,
            "data": self.data.to_dict(),
        }
