from thread_runtime.session.controller import (
    ThreadSessionController,
    TranscriptEntry,
    TranscriptSnapshot,
    TurnResult,
)

__all__ = ["ThreadSessionController", "TranscriptEntry", "TranscriptSnapshot", "TurnResult"]
