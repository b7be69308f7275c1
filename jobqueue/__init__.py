"""
Durable Job Queue

A database-backed, priority-ordered job queue with atomic reservation,
bounded retries, a failure archive, progress tracking, and cooperative
worker control.
"""

__version__ = "1.0.0"
