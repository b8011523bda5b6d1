"""
Core modules for Quota Guard.

This package contains usage ledgers, turn session tracking, admission
control and usage alerts.
"""
