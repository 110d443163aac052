"""Child process supervision."""

from .supervisor import (
    ErroredEvent,
    ExitedEvent,
    OutputEvent,
    ProcessEvent,
    ProcessSupervisor,
    SupervisedProcess,
    is_alive,
    kill_process,
    kill_processes_on_port,
    wait_for_url,
)

__all__ = [
    "ProcessSupervisor",
    "SupervisedProcess",
    "ProcessEvent",
    "OutputEvent",
    "ExitedEvent",
    "ErroredEvent",
    "is_alive",
    "kill_process",
    "kill_processes_on_port",
    "wait_for_url",
]
