"""
Prepare job lifecycle: submit, follow the event stream, fall back to polling.
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Optional, Union

from errors import JobFailed, RemoteError
from models import (
    Detached,
    PlanResult,
    PrepareJob,
    PrepareJobAccepted,
    PrepareJobEvent,
    PrepareJobRequest,
)

logger = logging.getLogger(__name__)

PrepareOutcome = Union[PrepareJob, Detached]

DEFAULT_WATCH_TIMEOUT = 7200.0
DEFAULT_POLL_INTERVAL = 1.0

_DEADLINE_PASSED = object()


class PrepareJobClient:
    """Drives one prepare job from submission to a terminal or detached outcome."""

    def __init__(
        self,
        api,
        progress=None,
        timeout: float = DEFAULT_WATCH_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the prepare job client.

        Args:
            api: Engine REST client (SqlrsRestClient or compatible)
            progress: Optional PrepareProgress receiving every observed event
            timeout: Overall watch timeout in seconds (0 disables the limit)
            poll_interval: Delay between status polls in seconds
            clock: Monotonic time source
            sleep: Sleep function used between polls
        """
        self.api = api
        self.progress = progress
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    def submit(self, request: PrepareJobRequest) -> PrepareJobAccepted:
        """Submit a job without watching it. Submission failures propagate."""
        logger.debug(f"Submitting prepare job (kind={request.prepare_kind})")
        accepted = self.api.create_prepare_job(request)
        defaults = PrepareJobAccepted.for_job(accepted.job_id)
        if not accepted.status_url:
            accepted.status_url = defaults.status_url
        if not accepted.events_url:
            accepted.events_url = defaults.events_url
        logger.info(f"Prepare job accepted: {accepted.job_id}")
        return accepted

    def run(self, request: PrepareJobRequest) -> PrepareOutcome:
        """
        Submit a job and follow it.

        Returns:
            The succeeded job, or Detached if the watch timed out first

        Raises:
            RemoteError: If submission or status polling fails
            JobFailed: If the job reached the failed status
        """
        return self.follow(self.submit(request))

    def plan(self, request: PrepareJobRequest) -> Union[PlanResult, Detached]:
        """
        Submit a plan-only job and collect the tasks it would run.

        Returns:
            The plan, or Detached if the watch timed out first

        Raises:
            RemoteError: If the job is not plan-only or has no tasks
            JobFailed: If planning failed
        """
        accepted = self.submit(replace(request, plan_only=True))
        outcome = self.follow(accepted, require_result=False)
        if isinstance(outcome, Detached):
            return outcome

        # terminal events carry no tasks
        job = outcome if outcome.tasks else self._fetch(accepted)
        if not job.plan_only:
            raise RemoteError(f"prepare job {job.job_id} is not plan-only")
        if not job.tasks:
            raise RemoteError(f"plan job {job.job_id} succeeded without tasks")
        return PlanResult.from_job(job)

    def watch(self, job_id: str) -> PrepareOutcome:
        """
        Re-attach to an already submitted job.

        Raises:
            RemoteError: If the engine does not know the job
            JobFailed: If the job failed
        """
        job = self.api.get_prepare_job(job_id)
        if job is None:
            raise RemoteError(f"prepare job not found: {job_id}", 404)
        if job.is_terminal:
            logger.debug(f"Prepare job {job_id} already {job.status}")
            return self._resolve(job)
        return self.follow(PrepareJobAccepted.for_job(job_id))

    def follow(self, accepted: PrepareJobAccepted, require_result: bool = True) -> PrepareOutcome:
        """Follow events first; poll when the stream is unavailable or inconclusive."""
        deadline = None
        if self.timeout and self.timeout > 0:
            deadline = self.clock() + self.timeout

        try:
            observed = self._follow_events(accepted, deadline)
            if observed is _DEADLINE_PASSED:
                return self._detach(accepted)
            if observed is not None:
                return self._resolve_event(accepted, observed, require_result)

            logger.debug(f"Falling back to polling for prepare job {accepted.job_id}")
            return self._poll(accepted, deadline, require_result)
        finally:
            if self.progress is not None:
                self.progress.close()

    def _follow_events(self, accepted: PrepareJobAccepted, deadline: Optional[float]):
        """Return the terminal event, None when inconclusive, or the deadline marker."""
        try:
            events = self.api.stream_prepare_events(accepted.events_url)
        except RemoteError as e:
            logger.debug(f"Event stream unavailable: {e}")
            return None

        try:
            for raw in events:
                if not isinstance(raw, dict):
                    logger.debug(f"Ignoring unexpected event payload: {raw!r}")
                    continue
                event = PrepareJobEvent.from_dict(raw)
                if self.progress is not None:
                    self.progress.update(event)
                if self._is_terminal_event(event):
                    return event
                if deadline is not None and self.clock() >= deadline:
                    return _DEADLINE_PASSED
        except RemoteError as e:
            logger.debug(f"Event stream ended early: {e}")
            return None
        finally:
            close = getattr(events, "close", None)
            if close is not None:
                close()

        logger.debug(f"Event stream for {accepted.job_id} ended without a terminal status")
        return None

    @staticmethod
    def _is_terminal_event(event: PrepareJobEvent) -> bool:
        if event.status in ("succeeded", "failed"):
            return True
        return event.type == "result" and event.result is not None

    def _resolve_event(
        self, accepted: PrepareJobAccepted, event: PrepareJobEvent, require_result: bool
    ) -> PrepareJob:
        if event.status == "failed":
            if event.error is not None:
                raise JobFailed(accepted.job_id, event.error.message, event.error.details)
            return self._resolve(self._fetch(accepted))

        if event.result is not None:
            return PrepareJob(
                job_id=accepted.job_id, status="succeeded", result=event.result
            )
        return self._resolve(self._fetch(accepted), require_result)

    def _fetch(self, accepted: PrepareJobAccepted) -> PrepareJob:
        job = self.api.get_prepare_job(accepted.job_id, accepted.status_url)
        if job is None:
            raise RemoteError(f"prepare job not found: {accepted.job_id}", 404)
        return job

    def _poll(
        self, accepted: PrepareJobAccepted, deadline: Optional[float], require_result: bool = True
    ) -> PrepareOutcome:
        last_status = None
        while True:
            job = self._fetch(accepted)
            if job.status != last_status:
                last_status = job.status
                if self.progress is not None:
                    self.progress.update(PrepareJobEvent(type="status", status=job.status))
            if job.is_terminal:
                return self._resolve(job, require_result)

            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return self._detach(accepted)
                wait = min(wait, remaining)
            self.sleep(wait)

    def _resolve(self, job: PrepareJob, require_result: bool = True) -> PrepareJob:
        if job.status == "failed":
            message = job.error.message if job.error else ""
            details = job.error.details if job.error else None
            raise JobFailed(job.job_id, message, details)
        if require_result and job.result is None:
            raise RemoteError(f"prepare job {job.job_id} succeeded without a result")
        return job

    def _detach(self, accepted: PrepareJobAccepted) -> Detached:
        logger.info(f"Stopped watching prepare job {accepted.job_id} (timeout {self.timeout}s)")
        return Detached(
            job_id=accepted.job_id,
            status_url=accepted.status_url,
            events_url=accepted.events_url,
        )
