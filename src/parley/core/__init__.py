"""Request lifecycle components for parley.

The engine context and continuation orchestrator live in
``parley.core.context`` / ``parley.core.continuation``; they import the
stream parsers and are exported from the top-level package instead.
"""

from parley.core.cancellation import CancelledByToken, CancelToken
from parley.core.lock import AdvisoryLock, MemoryPreferenceStore, YamlPreferenceStore
from parley.core.sinks import InMemoryMessageSink, NullRenderSink, RecordingRenderSink
from parley.core.state_machine import RequestStateMachine

__all__ = [
    "AdvisoryLock",
    "CancelToken",
    "CancelledByToken",
    "InMemoryMessageSink",
    "MemoryPreferenceStore",
    "NullRenderSink",
    "RecordingRenderSink",
    "RequestStateMachine",
    "YamlPreferenceStore",
]
