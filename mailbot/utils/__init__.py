"""
Shared helpers
"""
