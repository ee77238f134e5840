"""Verify outcome parsing and the autofix repair policy."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from report_pipeline.orchestrator.errors import InvalidVerifyOutcomeError

HARD_FAIL_ERROR = "verifier hard fail"


class VerifyStatus(str, Enum):
    """Three-way verification verdict."""

    ACCEPT = "accept"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


@dataclass(slots=True)
class VerifyOutcome:
    """Structured result of a verify work function."""

    status: VerifyStatus
    draft: Any = None
    violations: list[Any] = field(default_factory=list)
    patches: list[Any] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: Mapping[str, Any]) -> VerifyOutcome:
        raw_status = result.get("status")
        try:
            status = VerifyStatus(raw_status)
        except ValueError as error:
            raise InvalidVerifyOutcomeError(
                f"Unknown verify status {raw_status!r}; "
                "expected accept, soft_fail, or hard_fail.",
            ) from error
        return cls(
            status=status,
            draft=result.get("draft"),
            violations=list(result.get("violations") or []),
            patches=list(result.get("patches") or []),
        )


def is_structured_verify_result(result: Any) -> bool:
    return isinstance(result, Mapping) and result.get("status") is not None


@dataclass(slots=True)
class AutofixDecision:
    """Decision returned by the repair policy."""

    should_autofix: bool
    reason: str


def decide_autofix(*, attempts_used: int, max_attempts: int | None) -> AutofixDecision:
    """Allow another autofix round while the per-task budget lasts.

    ``max_attempts=None`` leaves the loop unbounded.
    """

    if max_attempts is None:
        return AutofixDecision(should_autofix=True, reason="Autofix attempts are unbounded.")
    if attempts_used >= max_attempts:
        return AutofixDecision(
            should_autofix=False,
            reason=f"verifier soft fail exceeded {max_attempts} autofix attempts",
        )
    return AutofixDecision(
        should_autofix=True,
        reason=f"Autofix attempt {attempts_used + 1} of {max_attempts}.",
    )
