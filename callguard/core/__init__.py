"""
Core modules for callguard.

This package contains the processing state machine, orchestration,
redaction, scheduling and billing logic.
"""
