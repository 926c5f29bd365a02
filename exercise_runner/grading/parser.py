"""
Result parser.

Classifies the captured output of a harness run into a ``TestOutcome``.
Priority: backend error, FAIL marker, ERROR marker, PASS marker.  A run
without any verdict line is an error, never a pass, and so is a PASS from a
run that did not end cleanly: the harness always returns normally after
its verdict.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import orjson
from structlog import get_logger

from exercise_runner.grading.harness import MARKER
from exercise_runner.models.schemas import TestDefinition, TestOutcome, TestStatus
from exercise_runner.sandbox.errors import ExecutionError, ExecutionTimeoutError
from exercise_runner.sandbox.models import ExecutionResult

logger = get_logger()

_VERDICT_RE = re.compile(
    r"^" + re.escape(MARKER) + r" (?P<nonce>[0-9a-f]+) (?P<verdict>PASS|FAIL|ERROR)(?: (?P<payload>.*))?$"
)

NO_VERDICT_MESSAGE = "No verdict produced"
ABNORMAL_EXIT_MESSAGE = "Run ended abnormally after its verdict"


@dataclass(frozen=True)
class Verdict:
    """One verdict line found in the output."""

    kind: str
    nonce: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str | None:
        message = self.payload.get("message")
        return str(message) if message is not None else None


def scan_verdicts(output: str, nonce: str | None = None) -> list[Verdict]:
    """Return every verdict line in *output*, optionally restricted to *nonce*."""
    verdicts: list[Verdict] = []
    for line in output.splitlines():
        match = _VERDICT_RE.match(line.rstrip("\r"))
        if match is None:
            continue
        if nonce is not None and match["nonce"] != nonce:
            continue
        verdicts.append(
            Verdict(
                kind=match["verdict"],
                nonce=match["nonce"],
                payload=_decode_payload(match["payload"]),
            )
        )
    return verdicts


def _decode_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return {"message": raw}
    return payload if isinstance(payload, dict) else {"message": str(payload)}


class ResultParser:
    """Deterministic output-to-outcome classification."""

    def parse(
        self,
        test: TestDefinition,
        result: ExecutionResult | None = None,
        *,
        nonce: str | None = None,
        error: ExecutionError | None = None,
    ) -> TestOutcome:
        if error is not None:
            return self._from_error(test, error)
        if result is None:
            raise ValueError("Either a result or an error is required")

        verdicts = scan_verdicts(result.stdout, nonce)
        status, message = self._classify(verdicts)
        if status is None:
            status = TestStatus.ERRORED
            message = (
                f"{NO_VERDICT_MESSAGE}: {result.error_summary}"
                if result.error_summary
                else NO_VERDICT_MESSAGE
            )
        elif status is TestStatus.PASSED and result.error_summary:
            status = TestStatus.ERRORED
            message = f"{ABNORMAL_EXIT_MESSAGE}: {result.error_summary}"

        return TestOutcome(
            id=test.id,
            name=test.name,
            status=status,
            message=message,
            duration_ms=round(result.duration_ms, 2),
            hidden=test.hidden,
        )

    @staticmethod
    def _classify(verdicts: list[Verdict]) -> tuple[TestStatus | None, str | None]:
        by_kind: dict[str, Verdict] = {}
        for verdict in verdicts:
            by_kind.setdefault(verdict.kind, verdict)

        if "FAIL" in by_kind:
            return TestStatus.FAILED, by_kind["FAIL"].message or "Assertion failed"
        if "ERROR" in by_kind:
            verdict = by_kind["ERROR"]
            if verdict.payload.get("traceback"):
                logger.debug("Test raised", traceback=verdict.payload["traceback"])
            return TestStatus.ERRORED, verdict.message or "Test raised an exception"
        if "PASS" in by_kind:
            return TestStatus.PASSED, None
        return None, None

    @staticmethod
    def _from_error(test: TestDefinition, error: ExecutionError) -> TestOutcome:
        if isinstance(error, ExecutionTimeoutError):
            return TestOutcome(
                id=test.id,
                name=test.name,
                status=TestStatus.TIMED_OUT,
                message=error.message,
                duration_ms=round(error.elapsed_ms, 2),
                hidden=test.hidden,
            )
        return TestOutcome(
            id=test.id,
            name=test.name,
            status=TestStatus.ERRORED,
            message=error.message,
            hidden=test.hidden,
        )
