"""
camlink - connection management for ONVIF IP cameras.
"""

__version__ = "0.1.0"
