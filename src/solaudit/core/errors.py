"""Exception taxonomy for the audit pipeline."""

from __future__ import annotations

from typing import Optional


class AuditError(Exception):
    """Base class for all audit failures."""


class ValidationError(AuditError):
    """The submitted source (or agent selection) was rejected before analysis."""


class ModelCallFailed(AuditError):
    def __init__(self, model_id: str, last_error: Optional[str] = None):
        self.model_id = model_id
        self.last_error = last_error
        super().__init__(f"Model {model_id} failed: {last_error or 'unknown error'}")


class NoValidAnalysis(AuditError):
    def __init__(self, agent: str, errors: Optional[list[str]] = None):
        self.agent = agent
        self.errors = errors or []
        detail = "; ".join(self.errors) if self.errors else "no model returned a usable response"
        super().__init__(f"No valid analysis results from any model for {agent}: {detail}")


class AgentTimeout(AuditError):
    def __init__(self, agent: str, timeout: float):
        self.agent = agent
        self.timeout = timeout
        super().__init__(f"Agent {agent} timed out after {timeout:g}s")


class KnowledgeRetrievalDegraded(AuditError):
    """Knowledge lookup failed; callers fall back to the bundled core patterns."""


class PersistenceFailure(AuditError):
    """Writing an audit record failed. Logged, never surfaced to callers."""
