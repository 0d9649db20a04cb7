"""Background workers for async processing tasks."""

from genqueue.workers.generation_poll_worker import run_generation_poll_worker

__all__ = [
    "run_generation_poll_worker",
]
