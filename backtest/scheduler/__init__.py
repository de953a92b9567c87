"""
Task scheduler and execution units
"""
from .task_scheduler import TaskScheduler
