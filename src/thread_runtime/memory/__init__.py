from thread_runtime.memory.compaction import CompactionPolicy, estimate_tokens
from thread_runtime.memory.events import EventEmitter
from thread_runtime.memory.store import MemoryStore
from thread_runtime.memory.thread_store import CompactionResult, ThreadStore

__all__ = [
    "CompactionPolicy",
    "CompactionResult",
    "EventEmitter",
    "MemoryStore",
    "ThreadStore",
    "estimate_tokens",
]
