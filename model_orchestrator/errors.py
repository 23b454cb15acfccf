"""
Error taxonomy for the orchestration core.

Only two classes of failure ever leave the engine as exceptions:
  - configuration errors (nothing is configured to serve a task): fatal, never retried
  - output-format errors (model text could not be coerced into JSON): surfaced with a diagnostic window

Transient provider failures and rate limits are recovered inside the cascade and
show up as CascadeAttempt records instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from model_orchestrator.engine import CascadeAttempt


class OrchestratorError(Exception):
    """Base for orchestration errors."""

    pass


class NoProviderConfiguredError(OrchestratorError):
    """No provider able to serve the task has credentials configured."""

    def __init__(self, task: str, modality: str = "text") -> None:
        self.task = task
        self.modality = modality
        super().__init__(
            f"No provider configured for task '{task}' ({modality}). "
            "Set at least one provider API key (e.g. OPENAI_API_KEY, ANTHROPIC_API_KEY, GROQ_API_KEY)."
        )


class CascadeExhaustedError(OrchestratorError):
    """Every candidate in the cascade failed; carries the attempt history."""

    def __init__(self, task: str, attempts: list["CascadeAttempt"]) -> None:
        self.task = task
        self.attempts = list(attempts)
        detail = " | ".join(
            f"{a.provider.value}/{a.model}: {a.error or 'unknown error'}" for a in self.attempts
        )
        super().__init__(f"All providers failed for task '{task}' → {detail or 'no candidates'}")


class OutputFormatError(OrchestratorError):
    """Model output could not be parsed as JSON, even after repair."""

    def __init__(
        self,
        message: str,
        offset: int = -1,
        window: str = "",
        line: int = 0,
        column: int = 0,
        diagnostics: Optional[dict[str, Any]] = None,
        context: str = "",
    ) -> None:
        self.offset = offset
        self.window = window
        self.line = line
        self.column = column
        self.diagnostics = diagnostics or {}
        self.context = context
        self.attempts: list["CascadeAttempt"] = []
        self.provider: Optional[str] = None
        self.model: Optional[str] = None
        where = f" in {context}" if context else ""
        super().__init__(f"JSON parse error{where} at offset {offset}: {message}")


class GenerationCancelledError(OrchestratorError):
    """The caller's cancel signal fired before any candidate succeeded."""

    def __init__(self, task: str, attempts: list["CascadeAttempt"]) -> None:
        self.task = task
        self.attempts = list(attempts)
        super().__init__(f"Generation for task '{task}' was cancelled after {len(self.attempts)} attempt(s)")
