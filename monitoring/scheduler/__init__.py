"""Scheduler module for recurring triggers and job queues."""

from .job_queue import QUEUE_FOR_JOB, QUEUE_POLICIES, JobBroker, JobRecord, RetryPolicy
from .job_scheduler import JobScheduler
from .jobs import JobData, parse_job
from .task_coordinator import TaskCoordinator

__all__ = [
    "JobBroker",
    "JobData",
    "JobRecord",
    "JobScheduler",
    "QUEUE_FOR_JOB",
    "QUEUE_POLICIES",
    "RetryPolicy",
    "TaskCoordinator",
    "parse_job",
]
