"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
TMBridge - test management migration engine
Extracts test data from one test management system's API, transforms it and
loads it into another's, driven by a declarative config document.
"""

__version__ = "0.1.0"
