"""
Memory systems for the assistant.

Provides:
- Core memory (durable per-user fact profile, always in context)
- Recall memory (durable conversation summaries, searched on demand)
- Memory engine (unified load/update interface)
"""

from libs.memory.coordinator import MemoryContext, MemoryEngine
from libs.memory.core_memory import CoreMemory
from libs.memory.recall_memory import RecallMemory

__all__ = ["CoreMemory", "MemoryContext", "MemoryEngine", "RecallMemory"]
