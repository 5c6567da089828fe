# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
keg - formula resolution and transactional installation engine.
"""

__version__ = "1.0.0"
