"""Outcome of a list mutation.

Every mutating call returns exactly one of ``Applied``, ``Queued`` or
``Failed``. Callers are expected to handle all three.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Union

APPLIED = "applied"
QUEUED = "queued"
FAILED = "failed"


@dataclass(frozen=True)
class Applied:
    result: Any = None
    outcome: str = field(default=APPLIED, init=False)

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "result": self.result}


@dataclass(frozen=True)
class Queued:
    operation_id: uuid.UUID
    outcome: str = field(default=QUEUED, init=False)

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "operation_id": str(self.operation_id)}


@dataclass(frozen=True)
class Failed:
    reason: str
    message: str | None = None
    outcome: str = field(default=FAILED, init=False)

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "reason": self.reason, "message": self.message or self.reason}


ListResult = Union[Applied, Queued, Failed]
