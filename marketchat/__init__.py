"""
Marketchat: buyer/vendor chat and offer negotiation for the marketplace backend.
"""
__version__ = "1.0.0"
