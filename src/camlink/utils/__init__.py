"""
camlink utilities.
"""

from camlink.utils.config import Config

__all__ = ["Config"]
