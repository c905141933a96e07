from .memory_store import MemoryStore, close_memory_store, get_memory_store

__all__ = ["MemoryStore", "get_memory_store", "close_memory_store"]
