"""
TaskGuard API Models
"""
