from .memory_cache import MemoryCacheStore
from .sqlite_cache import SQLiteCacheStore
