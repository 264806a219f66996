"""
projmem - Persistent, concurrent project memory for AI-assisted coding sessions.

projmem records architectural decisions, reusable patterns, and key/value
context so they survive process restarts and can be shared across a team.
It provides:
- A capacity-bounded store with silent oldest-first eviction
- Full-text search over decisions
- Snapshot export/import with deterministic federation merge
- Rate limiting and input sanitization suitable for agent-facing tools

Example usage:
    $ projmem call store_decision --args '{"text": "Use Redis for caching"}'
    $ projmem search redis
    $ projmem export --out memory.json
"""

__version__ = "0.1.0"
__author__ = "projmem Contributors"

from projmem.config import MemoryConfig, load_config
from projmem.dispatcher import Dispatcher, ToolResult
from projmem.engine import MemoryStore

__all__ = [
    "__version__",
    "__author__",
    "Dispatcher",
    "MemoryConfig",
    "MemoryStore",
    "ToolResult",
    "load_config",
]
