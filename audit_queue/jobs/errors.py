from __future__ import annotations


class JobError(Exception):
    """Base error raised while driving a job to a terminal state."""


class TransientInfraError(JobError):
    """Lock contention, I/O timeouts and similar; retried through requeue."""


class ContentCheckError(JobError):
    """The check/report collaborator could not produce a report."""


class NotificationError(JobError):
    """The notification collaborator rejected or failed a send."""


class ConsistencyAmbiguousError(JobError):
    """The primary store could not confirm the job state within the retry budget."""
