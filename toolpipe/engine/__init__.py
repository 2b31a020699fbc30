"""Module __init__: tool execution engine."""
#
# PURPOSE:
# Runs external tools against message bytes and applies their results.
#
# MODULES IN THIS PACKAGE:
# - **environment.py**: Default environment overlay for child processes
# - **pump.py**: Ordered stream consumption onto a delivery context
# - **executor.py**: Parameters, spawn, feed, collect, deadline, temp file cleanup
# - **matching.py**: MessageMatch filters and command predicates
# - **payloads.py**: Line-per-payload generators
# - **dispatcher.py**: Candidate selection and per-kind result application
#
# WORKFLOW:
# Message -> ToolDispatcher -> CommandExecutor -> pump -> sink -> ToolOutcome
#

from .dispatcher import Annotations, HandleResult, Message, ToolDispatcher, ToolOutcome
from .environment import DEFAULT_ENVIRONMENT, child_environment, merge
from .executor import (
    CommandExecutor,
    InvocationResult,
    RunningInvocation,
    build_argv,
    parameter_environment,
    resolve_parameters,
)
from .payloads import PayloadStream
from .pump import BufferSink, CallbackSink, DeliveryThread, PumpHandle, PumpResult, pump

__all__ = [
    "Annotations",
    "HandleResult",
    "Message",
    "ToolDispatcher",
    "ToolOutcome",
    "DEFAULT_ENVIRONMENT",
    "child_environment",
    "merge",
    "CommandExecutor",
    "InvocationResult",
    "RunningInvocation",
    "build_argv",
    "parameter_environment",
    "resolve_parameters",
    "PayloadStream",
    "BufferSink",
    "CallbackSink",
    "DeliveryThread",
    "PumpHandle",
    "PumpResult",
    "pump",
]
