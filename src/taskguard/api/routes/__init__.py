"""
TaskGuard API Routes
"""
