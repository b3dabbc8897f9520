"""
Process configuration
"""
