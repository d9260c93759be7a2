"""
TaskGuard Core
Configuration, logging and caching primitives shared by every service.
"""
