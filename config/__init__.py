"""
Configuration package

Re-exports every setting so callers can write `from config import XXX`.
"""

from .paths import *
from .settings import *
