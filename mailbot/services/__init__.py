"""
Push pipeline services
"""
