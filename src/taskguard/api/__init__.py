"""
TaskGuard API
FastAPI surface for security administration, rate limiting and behavior monitoring.
"""
