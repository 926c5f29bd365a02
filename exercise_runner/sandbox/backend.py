"""
Execution backend interface.

Both the in-process interpreter and the remote sandbox implement the same
contract, for single scripts and multi-file projects alike.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from exercise_runner.sandbox.cancellation import CancellationToken
from exercise_runner.sandbox.models import BackendKind, ExecutionRequest, ExecutionResult


class ExecutionBackend(ABC):
    """Abstract execution backend."""

    @property
    @abstractmethod
    def kind(self) -> BackendKind:
        """Backend discriminator."""
        pass

    @abstractmethod
    async def execute(
        self,
        request: ExecutionRequest,
        token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Run the request and return its captured output.

        User-code failures are reported through
        ``ExecutionResult.error_summary``; only backend failures raise.
        """
        pass

    @abstractmethod
    async def cancel(self, request_id: str) -> None:
        """Stop a running request and release whatever it holds."""
        pass

    async def initialize(self) -> None:
        """Bring the backend up ahead of the first request (optional)."""

    async def shutdown(self) -> None:
        """Release every resource owned by the backend."""
