"""
Commit email bot: relays GitHub pushes into mailing-list announcements
"""

__version__ = "1.0.0"
