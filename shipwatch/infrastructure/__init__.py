"""
Shared Infrastructure
=====================

Process-wide infrastructure used by every module (database engine and sessions).
"""
