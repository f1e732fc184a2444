"""Configuration module for cibisect.

This module contains configuration classes for bisection runs.
"""

from cibisect.config.config import BisectConfig, DispatcherConfig


__all__ = ["BisectConfig", "DispatcherConfig"]
