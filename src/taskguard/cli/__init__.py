"""
TaskGuard CLI
"""
