"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
TMIMPORT - Testmo export importer
A two-phase pipeline that stages a Testmo JSON export and imports it into a
TestPlanIt-style workspace under a user-approved mapping configuration.
"""

__version__ = "0.1.0"
