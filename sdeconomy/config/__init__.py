"""
Supply/Demand Economy Service
Configuration Module
"""
from .settings import DatabaseSettings, EconomySettings, Settings, get_settings

__all__ = ["DatabaseSettings", "EconomySettings", "Settings", "get_settings"]
