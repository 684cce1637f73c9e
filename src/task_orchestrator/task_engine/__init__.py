"""Task graph engine.

This package provides the task model, the file-backed store with its single
graph mutation lock, the dependency graph manager and the status lifecycle
controller, tied together by :class:`TaskEngine`.
"""
