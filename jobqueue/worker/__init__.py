"""
Worker module.
Contains the job type registry and the worker loop.
"""
