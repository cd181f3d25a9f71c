"""Single fire-and-forget dispatch of the merge job for a matched pair."""

from __future__ import annotations

import logging

from job_runners import JobRunner
from models import DispatchResult

LOGGER = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, runner: JobRunner) -> None:
        self.runner = runner

    def dispatch(self, primary_artifact_id: str, companion_artifact_id: str, session: str) -> DispatchResult:
        """Ask the job runner to merge one pair; does not wait for the job.

        The runner is called at most once and never retried. Redelivery is the
        notification source's job.
        """
        if not primary_artifact_id or not companion_artifact_id:
            return DispatchResult(accepted=False, reason="Both primary and companion artifact ids are required")

        LOGGER.info(
            "Triggering merge for session=%s primary=%s companion=%s",
            session,
            primary_artifact_id,
            companion_artifact_id,
        )
        result = self.runner.invoke(
            {"primaryArtifactId": primary_artifact_id, "companionArtifactId": companion_artifact_id}
        )
        if result.accepted:
            LOGGER.info("Merge job accepted for session=%s", session)
        else:
            LOGGER.error("Merge job rejected for session=%s: %s", session, result.reason)
        return result
