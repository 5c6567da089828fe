# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Core utilities shared by every keg module.

This package contains:
- config: Configuration management
- errors: Custom exceptions
- logging: Structured logging
"""

from keg.core.config import Config, load_config
from keg.core.errors import KegError, ResolutionError, TransportError, InstallError
from keg.core.logging import get_logger, configure_logging

__all__ = [
    "Config",
    "load_config",
    "KegError",
    "ResolutionError",
    "TransportError",
    "InstallError",
    "get_logger",
    "configure_logging",
]
