from .polling import (
    ClientPollError,
    PollingClient,
    PollState,
    SubmissionError,
    TaskProgress,
    ThreadingScheduler,
    convert_file,
    submit_file,
)

__all__ = [
    "ClientPollError",
    "PollState",
    "PollingClient",
    "SubmissionError",
    "TaskProgress",
    "ThreadingScheduler",
    "convert_file",
    "submit_file",
]
