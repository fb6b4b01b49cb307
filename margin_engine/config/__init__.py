"""
Seller Margin Engine
Configuration Module
"""
from .settings import MarginSettings, Settings, get_settings

__all__ = ["MarginSettings", "Settings", "get_settings"]
