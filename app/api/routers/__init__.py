"""
HTTP routers for the import service: file imports and the import queue.
"""
