"""Job router: maps numeric job ids from the dispatch layer onto lifecycle operations."""
#
# PURPOSE:
# The external job transport knows three public jobs by number:
#
#   1 -> modify rollup metadata   (update_metadata)
#   2 -> restart rollup           (restart)
#   3 -> update token bridge      (update_bridge)
#
# Deploy has no job id; it only runs at service bring-up. Unknown ids are
# rejected with UnknownJob before anything else happens.
#

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Union

from raas.engine.dispatcher import JobDispatcher, TransitionRequest, TransitionResult
from raas.engine.state_machine import Operation
from raas.errors import UnknownJob

logger = logging.getLogger(__name__)

MODIFY_METADATA_JOB_ID = 1
RESTART_JOB_ID = 2
UPDATE_BRIDGE_JOB_ID = 3

JOB_OPERATIONS: Dict[int, Operation] = {
    MODIFY_METADATA_JOB_ID: Operation.UPDATE_METADATA,
    RESTART_JOB_ID: Operation.RESTART,
    UPDATE_BRIDGE_JOB_ID: Operation.UPDATE_BRIDGE,
}


class JobRouter:
    def __init__(self, dispatcher: JobDispatcher):
        self.dispatcher = dispatcher

    @staticmethod
    def operation_for(job_id: Union[int, str]) -> Operation:
        try:
            return JOB_OPERATIONS[int(job_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownJob(job_id) from None

    async def handle(
        self,
        job_id: Union[int, str],
        instance_id: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        """Route one job call. Raises UnknownJob; everything else comes back as a result."""
        operation = self.operation_for(job_id)
        logger.info(f"[JobRouter] job {job_id} -> {operation.value} on {instance_id}")
        return await self.dispatcher.submit(TransitionRequest.create(instance_id, operation, args))
