"""
orgscan - compliance scanning across GitHub organizations.
"""

__version__ = "0.1.0"
