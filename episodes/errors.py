from __future__ import annotations


class EpisodesError(Exception):
    """Base class for errors raised by the episode scheduling subsystem."""


class InvalidRecurrence(EpisodesError, ValueError):
    pass


class IllegalTransition(EpisodesError):
    def __init__(self, job_id, from_status: str, to_status: str):
        super().__init__(f"GenerationJob({job_id}) cannot move {from_status} -> {to_status}")
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


class JobNotFound(EpisodesError, LookupError):
    pass


class WorkflowError(EpisodesError):
    """The external generation workflow could not be started or queried."""


class StaleJobState(EpisodesError):
    """The job moved on (outcome already applied, cancelled, lease lost) before this write."""

    def __init__(self, job_id, status: str, message: str = ""):
        super().__init__(message or f"GenerationJob({job_id}) is {status}")
        self.job_id = job_id
        self.status = status


class ProjectNotFound(EpisodesError, LookupError):
    pass
