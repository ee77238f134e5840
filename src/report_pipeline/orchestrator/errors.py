"""Exception hierarchy for planning and orchestration."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestration failures."""


class DagIntegrityError(OrchestratorError):
    """A task graph references nodes it does not contain."""


class DagCycleError(DagIntegrityError):
    """A task graph contains a dependency cycle."""

    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = node_ids
        super().__init__(f"Task graph contains a cycle through: {', '.join(node_ids)}")


class TaskNotFoundError(OrchestratorError):
    """No task row exists for the requested project/node pair."""

    def __init__(self, project_id: str, node_id: str) -> None:
        self.project_id = project_id
        self.node_id = node_id
        super().__init__(f"Task not found: project_id={project_id} node_id={node_id}")


class UnknownTaskKindError(OrchestratorError):
    """Task kind has no queue or payload builder."""


class InvalidVerifyOutcomeError(OrchestratorError):
    """Verify work function returned an unrecognized status."""
