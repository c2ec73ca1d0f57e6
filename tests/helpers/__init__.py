"""Test helpers: fake clock, recording executor and scripted turn builders."""

from tests.helpers.fakes import (
    DEADLINE_PAYLOAD,
    FakeClock,
    RecordingExecutor,
    answer_turn,
    deadline_turn,
)

__all__ = [
    "DEADLINE_PAYLOAD",
    "FakeClock",
    "RecordingExecutor",
    "answer_turn",
    "deadline_turn",
]
